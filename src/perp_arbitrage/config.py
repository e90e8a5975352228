"""
Arbitrage Configuration

Typed views over the YAML configuration consumed by the engine, the loop
and the venue factory.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .resilience import (
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_POLL_THRESHOLD,
)


@dataclass(frozen=True)
class TradeOptions:
    """Parameters for applying a position to a venue pair."""

    symbol: str
    leverage: float
    rebalance_threshold: float


@dataclass
class RetrySettings:
    """Retry budget for venue calls."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_seconds: float = DEFAULT_BASE_DELAY

    @classmethod
    def from_config(cls, config: dict) -> "RetrySettings":
        """Create from config dictionary."""
        retry = config.get("retry", {}) or {}
        return cls(
            max_attempts=int(retry.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
            base_delay_seconds=float(retry.get("base_delay_seconds", DEFAULT_BASE_DELAY)),
        )


@dataclass
class PollSettings:
    """Settlement polling for venue effects."""

    interval_seconds: float = DEFAULT_POLL_INTERVAL
    threshold: float = DEFAULT_POLL_THRESHOLD
    timeout_seconds: Optional[float] = None  # None = wait indefinitely

    @classmethod
    def from_config(cls, config: dict) -> "PollSettings":
        """Create from config dictionary."""
        poll = config.get("poll", {}) or {}
        timeout = poll.get("timeout_seconds")
        return cls(
            interval_seconds=float(poll.get("interval_seconds", DEFAULT_POLL_INTERVAL)),
            threshold=float(poll.get("threshold", DEFAULT_POLL_THRESHOLD)),
            timeout_seconds=float(timeout) if timeout is not None else None,
        )


@dataclass
class ArbConfig:
    """Runtime configuration of the arbitrage bot."""

    symbol: str
    leverage: float
    rebalance_threshold: float = 0.1
    min_profit_time: float = 3600.0  # seconds the spread must stay favorable
    period: float = 60.0  # seconds between loop iterations
    fee_recipient: Optional[str] = None
    fee_ratio: float = 0.1
    state_file: str = "state.json"
    retry: RetrySettings = field(default_factory=RetrySettings)
    poll: PollSettings = field(default_factory=PollSettings)
    venues: List[Dict[str, Any]] = field(default_factory=list)
    wallet: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ValueError: On the first invalid setting.
        """
        if not self.symbol:
            raise ValueError("A trading symbol is required")
        if self.leverage <= 0:
            raise ValueError(f"Leverage must be positive, got {self.leverage}")
        if self.rebalance_threshold < 0:
            raise ValueError(
                f"Rebalance threshold must be non-negative, got {self.rebalance_threshold}"
            )
        if self.min_profit_time < 0:
            raise ValueError(f"Minimum profit time must be non-negative, got {self.min_profit_time}")
        if self.period <= 0:
            raise ValueError(f"Loop period must be positive, got {self.period}")
        if not 0 <= self.fee_ratio <= 1:
            raise ValueError(f"Fee ratio must be between 0 and 1, got {self.fee_ratio}")
        if self.retry.max_attempts < 0:
            raise ValueError(f"Retry attempts must be non-negative, got {self.retry.max_attempts}")
        if self.poll.timeout_seconds is not None and self.poll.timeout_seconds <= 0:
            raise ValueError(f"Poll timeout must be positive, got {self.poll.timeout_seconds}")

    @classmethod
    def from_config(cls, config: dict) -> "ArbConfig":
        """Create from config dictionary."""
        trading = config.get("trading", {}) or {}
        fees = config.get("fees", {}) or {}
        state = config.get("state", {}) or {}

        return cls(
            symbol=trading.get("symbol", ""),
            leverage=float(trading.get("leverage", 1.0)),
            rebalance_threshold=float(trading.get("rebalance_threshold", 0.1)),
            min_profit_time=float(trading.get("min_profit_time", 3600)),
            period=float(trading.get("period", 60)),
            fee_recipient=fees.get("recipient") or None,
            fee_ratio=float(fees.get("ratio", 0.1)),
            state_file=state.get("path", "state.json"),
            retry=RetrySettings.from_config(config),
            poll=PollSettings.from_config(config),
            venues=list(config.get("venues", []) or []),
            wallet=dict(config.get("wallet", {}) or {}),
        )

    def trade_options(
        self,
        leverage: Optional[float] = None,
        rebalance_threshold: Optional[float] = None,
    ) -> TradeOptions:
        """TradeOptions for this symbol, overriding leverage or threshold."""
        return TradeOptions(
            symbol=self.symbol,
            leverage=self.leverage if leverage is None else leverage,
            rebalance_threshold=(
                self.rebalance_threshold if rebalance_threshold is None else rebalance_threshold
            ),
        )
