"""
Paper Trading Venues

In-memory venue, wallet and converter for dry runs. Collateral lives in a
shared PaperLedger so transfers between the wallet and the venues conserve
funds. Positions are marked to the venue's current price and pay or
receive funding continuously.
"""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from ..config import PollSettings, RetrySettings
from ..resilience import SleepFn, poll_until, retry_with_backoff
from ..venue import Order, PerpVenue, VenueQuote, Wallet

logger = logging.getLogger("perp_arb.venues.paper")

# Position changes smaller than this are treated as no-ops
SIZE_TOLERANCE = 1e-9


class InsufficientFundsError(Exception):
    """Raised when a paper account cannot cover a debit."""


class PaperLedger:
    """Token balances keyed by token and holder address."""

    def __init__(self, balances: Optional[Dict[str, Dict[str, float]]] = None):
        """
        Args:
            balances: Optional initial balances as {token: {address: amount}}
        """
        self._balances: Dict[Tuple[str, str], float] = defaultdict(float)
        for token, holders in (balances or {}).items():
            for address, amount in holders.items():
                self._balances[(token, address)] = float(amount)

    def balance_of(self, token: str, address: str) -> float:
        return self._balances.get((token, address), 0.0)

    def adjust(self, token: str, address: str, delta: float) -> None:
        """Apply a signed balance change without checks (fees, PnL, funding)."""
        self._balances[(token, address)] += delta

    def move(self, token: str, src: str, dst: str, amount: float) -> None:
        """Transfer ``amount`` from src to dst."""
        if amount < 0:
            raise ValueError(f"Transfer amount must be non-negative, got {amount}")
        available = self.balance_of(token, src)
        if available + SIZE_TOLERANCE < amount:
            raise InsufficientFundsError(
                f"{src} holds {available:.6f} {token}, cannot send {amount:.6f}"
            )
        self._balances[(token, src)] -= amount
        self._balances[(token, dst)] += amount


class PaperWallet:
    """Wallet backed by a PaperLedger."""

    def __init__(self, ledger: PaperLedger, address: str = "paper:wallet"):
        self.ledger = ledger
        self.address = address

    async def transfer(self, token: str, to_address: str, amount: float) -> None:
        self.ledger.move(token, self.address, to_address, amount)
        logger.debug("wallet transfer %.6f %s %s -> %s", amount, token, self.address, to_address)

    async def balance_of(self, token: str, address: str) -> float:
        return self.ledger.balance_of(token, address)


class PaperConverter:
    """Converts between paper tokens at fixed rates minus a swap fee."""

    def __init__(
        self,
        ledger: PaperLedger,
        fee_rate: float = 0.0005,
        rates: Optional[Dict[Tuple[str, str], float]] = None,
    ):
        """
        Args:
            ledger: Shared ledger
            fee_rate: Fraction of the output kept as swap fee
            rates: (src, dst) -> units of dst per unit of src, default 1.0
        """
        self.ledger = ledger
        self.fee_rate = fee_rate
        self.rates = dict(rates or {})

    async def convert(self, wallet: Wallet, src_token: str, dst_token: str, amount: float) -> float:
        rate = self.rates.get((src_token, dst_token), 1.0)
        received = amount * rate * (1 - self.fee_rate)

        self.ledger.move(src_token, wallet.address, "paper:converter", amount)
        self.ledger.adjust(dst_token, wallet.address, received)

        logger.info("paper convert %.6f %s -> %.6f %s", amount, src_token, received, dst_token)
        return received


class PaperVenue(PerpVenue):
    """
    Simulated perpetual-futures venue.

    Balance = collateral in the ledger + unrealized PnL of the position.
    Funding accrues on every balance read: with a positive rate longs pay
    and shorts receive ``|size| * price * rate`` per second.
    """

    def __init__(
        self,
        venue_name: str,
        ledger: PaperLedger,
        deposit_token: str = "USDT",
        price: float = 2000.0,
        funding_rate_per_second: float = 0.0,
        fee_rate: float = 0.0006,
        slippage: float = 0.0005,
        retry: Optional[RetrySettings] = None,
        poll: Optional[PollSettings] = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._name = venue_name
        self.ledger = ledger
        self.deposit_token = deposit_token
        self.price = price
        self.funding_rate_per_second = funding_rate_per_second
        self.fee_rate = fee_rate
        self.slippage = slippage
        self.retry = retry or RetrySettings()
        self.poll = poll or PollSettings()
        self._clock = clock
        self._sleep = sleep

        self.account = f"paper:{venue_name}"
        self.position_size = 0.0
        self.entry_price = 0.0
        self.leverage = 1.0
        self.total_fees = 0.0
        self.total_funding = 0.0
        self._last_accrual = clock()

        logger.info(
            "PaperVenue %s initialized: price=%.2f, rate=%.3e/s, fee=%.3f%%",
            venue_name,
            price,
            funding_rate_per_second,
            fee_rate * 100,
        )

    def name(self) -> str:
        return self._name

    # -------------------------------------------------------------------------
    # Simulation controls
    # -------------------------------------------------------------------------

    def set_price(self, price: float) -> None:
        self._accrue()
        self.price = price

    def set_funding_rate(self, rate_per_second: float) -> None:
        self._accrue()
        self.funding_rate_per_second = rate_per_second

    @property
    def collateral(self) -> float:
        return self.ledger.balance_of(self.deposit_token, self.account)

    @property
    def unrealized_pnl(self) -> float:
        return self.position_size * (self.price - self.entry_price)

    def _accrue(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_accrual)
        self._last_accrual = now
        if self.position_size == 0 or elapsed == 0:
            return

        payment = self.position_size * self.price * self.funding_rate_per_second * elapsed
        self.ledger.adjust(self.deposit_token, self.account, -payment)
        self.total_funding -= payment

    # -------------------------------------------------------------------------
    # PerpVenue
    # -------------------------------------------------------------------------

    async def read_market_data(self, symbol: str, amount: float) -> VenueQuote:
        cost = abs(amount) * self.price * (self.fee_rate + self.slippage)
        return VenueQuote(
            buy_loss=cost,
            sell_loss=cost,
            funding_rate_per_second=self.funding_rate_per_second,
        )

    async def set_order(self, order: Order) -> None:
        self._accrue()
        delta = order.signed_size - self.position_size
        if abs(delta) < SIZE_TOLERANCE and abs(order.leverage - self.leverage) < 0.01:
            logger.debug("%s already at %.6f, nothing to do", self._name, order.signed_size)
            return

        async def _fill() -> None:
            # Mark to market, then re-enter at the current price
            self.ledger.adjust(self.deposit_token, self.account, self.unrealized_pnl)
            fee = abs(delta) * self.price * (self.fee_rate + self.slippage)
            self.ledger.adjust(self.deposit_token, self.account, -fee)
            self.total_fees += fee
            self.position_size = order.signed_size
            self.entry_price = self.price
            self.leverage = order.leverage

        await retry_with_backoff(
            f"{self._name} set_order",
            _fill,
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay_seconds,
            sleep=self._sleep,
        )

        async def _gap() -> float:
            return abs(self.position_size - order.signed_size)

        await self._poll(_gap, f"{self._name} position")

        logger.info(
            "%s position %.6f %s @ %.2f (%.2fx)",
            self._name,
            self.position_size,
            order.symbol,
            self.price,
            self.leverage,
        )

    async def get_balance(self, symbols: List[str]) -> float:
        self._accrue()
        return self.collateral + self.unrealized_pnl

    async def get_price(self, symbol: str) -> float:
        return self.price

    async def get_max_profitable_size(self, symbol: str, leverage: float) -> float:
        return leverage * 0.95 * await self.get_balance([symbol]) / self.price

    async def get_required_deposit_token(self) -> str:
        return self.deposit_token

    async def deposit(self, wallet: Wallet, amount: float) -> None:
        expected = self.collateral + amount

        await retry_with_backoff(
            f"deposit {self._name}",
            lambda: wallet.transfer(self.deposit_token, self.account, amount),
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay_seconds,
            sleep=self._sleep,
        )

        async def _gap() -> float:
            return max(0.0, expected - self.collateral)

        await self._poll(_gap, f"{self._name} deposit")

    async def withdraw(self, to_address: str, amount: float) -> None:
        self._accrue()
        expected = self.ledger.balance_of(self.deposit_token, to_address) + amount

        async def _send() -> None:
            self.ledger.move(self.deposit_token, self.account, to_address, amount)

        await retry_with_backoff(
            f"withdraw {self._name}",
            _send,
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay_seconds,
            sleep=self._sleep,
        )

        async def _gap() -> float:
            return max(0.0, expected - self.ledger.balance_of(self.deposit_token, to_address))

        await self._poll(_gap, f"{self._name} withdrawal")

    async def _poll(self, probe, description: str) -> float:
        return await poll_until(
            probe,
            poll_interval=self.poll.interval_seconds,
            threshold=self.poll.threshold,
            timeout=self.poll.timeout_seconds,
            sleep=self._sleep,
            description=description,
        )
