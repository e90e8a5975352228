"""
Perpetual Funding Rate Arbitrage Module

A delta-neutral strategy that earns the funding spread between two
perpetual-futures venues:
1. Going LONG on the venue with the lowest funding rate
2. Going SHORT on the venue with the highest funding rate (same size)
3. Keeping collateral split evenly and closing when the spread inverts

The open trade is persisted to a JSON state file so a restart resumes
monitoring where the previous run stopped.
"""

from .calculator import LongShortSelection, RebalancePlan
from .config import ArbConfig, PollSettings, RetrySettings, TradeOptions
from .orchestrator import ArbitrageLoop
from .resilience import (
    ConfirmationFailedError,
    PendingConfirmation,
    PollTimeoutError,
    RetryExhaustedError,
    poll_until,
    retry_with_backoff,
)
from .state_store import StateFileError, StateStore, TradeRecord
from .trade_engine import TradeEngine, UnknownVenueError
from .venue import Converter, Order, PerpVenue, VenueQuote, Wallet

__all__ = [
    # Venue contract
    "PerpVenue",
    "VenueQuote",
    "Order",
    "Wallet",
    "Converter",
    # Calculations
    "LongShortSelection",
    "RebalancePlan",
    # Resilience
    "retry_with_backoff",
    "poll_until",
    "PendingConfirmation",
    "RetryExhaustedError",
    "ConfirmationFailedError",
    "PollTimeoutError",
    # State
    "TradeRecord",
    "StateStore",
    "StateFileError",
    # Configuration
    "ArbConfig",
    "TradeOptions",
    "RetrySettings",
    "PollSettings",
    # Engine
    "TradeEngine",
    "UnknownVenueError",
    "ArbitrageLoop",
]
