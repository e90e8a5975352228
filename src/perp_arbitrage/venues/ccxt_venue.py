"""
CCXT Perpetual Venue

PerpVenue backed by a ccxt exchange (linear USDT-settled perpetuals).
Bybit is the reference target, but any exchange exposing funding rates,
positions, leverage and withdrawals through ccxt works.

Every exchange call goes through retry_with_backoff; order, deposit and
withdrawal effects are confirmed with poll_until before returning. Only
calls that change exchange state are fatal once retries run out; a read
that keeps failing raises VenueUnavailableError and the iteration is
simply retried next period.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import ccxt.async_support as ccxt_async

from ..config import PollSettings, RetrySettings
from ..resilience import RetryExhaustedError, SleepFn, poll_until, retry_with_backoff
from ..venue import Order, PerpVenue, VenueQuote, Wallet

logger = logging.getLogger("perp_arb.venues.ccxt")

DEFAULT_FUNDING_INTERVAL_HOURS = 8.0
ORDER_BOOK_DEPTH = 200

# Share of a deposit that may be lost to network or exchange fees
DEFAULT_ARRIVAL_TOLERANCE = 0.01


class VenueUnavailableError(Exception):
    """Raised when a read-only exchange call keeps failing."""


def parse_funding_interval(interval: Optional[str], default_hours: float) -> float:
    """
    Convert a ccxt funding interval ("8h", "60m", "1d") to seconds.

    Falls back to ``default_hours`` if the exchange does not report one.
    """
    if not interval:
        return default_hours * 3600
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([mhd])\s*", str(interval))
    if not match:
        logger.warning("Unrecognized funding interval %r, assuming %.0fh", interval, default_hours)
        return default_hours * 3600
    value, unit = float(match.group(1)), match.group(2)
    return value * {"m": 60, "h": 3600, "d": 86400}[unit]


def book_slippage(levels: Sequence[Sequence[float]], mid_price: float, amount: float) -> float:
    """
    Cost of filling ``amount`` against one side of the book, versus mid.

    Any amount beyond the visible depth is charged at the last level.
    """
    cost = 0.0
    remaining = amount
    for level in levels:
        price, size = float(level[0]), float(level[1])
        fill = min(size, remaining)
        cost += abs(price - mid_price) * fill
        remaining -= fill
        if remaining <= 0:
            return cost

    if remaining > 0 and levels:
        cost += abs(float(levels[-1][0]) - mid_price) * remaining
    return cost


class CcxtVenue(PerpVenue):
    """
    Centralized-exchange venue driven through ccxt.

    Collateral is the settle currency (USDT). Deposits arrive on-chain from
    a Wallet; withdrawals leave on-chain and are confirmed by watching the
    destination balance through the same Wallet.
    """

    def __init__(
        self,
        venue_name: str,
        wallet: Wallet,
        exchange_id: str = "bybit",
        deposit_token: str = "USDT",
        settle: str = "USDT",
        network: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        sandbox: bool = False,
        taker_fee: float = 0.001,
        funding_interval_hours: float = DEFAULT_FUNDING_INTERVAL_HOURS,
        size_tolerance: float = 0.01,
        trading_account: Optional[str] = None,
        funding_account: Optional[str] = None,
        arrival_tolerance: float = DEFAULT_ARRIVAL_TOLERANCE,
        retry: Optional[RetrySettings] = None,
        poll: Optional[PollSettings] = None,
        sleep: SleepFn = asyncio.sleep,
        exchange: Optional[Any] = None,
    ):
        """
        Initialize the venue.

        Args:
            venue_name: Stable name used in the persisted record
            wallet: On-chain wallet used to observe withdrawals
            exchange_id: ccxt exchange id
            deposit_token: Token id the Wallet uses for the collateral
            settle: Settle currency code at the exchange
            network: Withdrawal/deposit network code (e.g. "OP")
            api_key: API key
            api_secret: API secret
            sandbox: Use the exchange testnet
            taker_fee: Fee rate charged on market orders
            funding_interval_hours: Used when the exchange omits the interval
            size_tolerance: Position difference treated as filled
            trading_account: Account type holding margin (for internal transfers)
            funding_account: Account type withdrawals are made from
            arrival_tolerance: Fraction of a deposit allowed to go missing to fees
            retry: Retry budget for exchange calls
            poll: Settlement polling
            sleep: Awaitable sleep function (injectable for tests)
            exchange: Pre-built ccxt exchange (tests)
        """
        self._name = venue_name
        self.wallet = wallet
        self.exchange_id = exchange_id
        self.deposit_token = deposit_token
        self.settle = settle
        self.network = network
        self.taker_fee = taker_fee
        self.funding_interval_hours = funding_interval_hours
        self.size_tolerance = size_tolerance
        self.trading_account = trading_account
        self.funding_account = funding_account
        self.arrival_tolerance = arrival_tolerance
        self.retry = retry or RetrySettings()
        self.poll = poll or PollSettings()
        self._sleep = sleep

        if exchange is None:
            exchange_config: Dict[str, Any] = {
                "enableRateLimit": True,
                "options": {"defaultType": "swap"},
            }
            if api_key:
                exchange_config["apiKey"] = api_key
            if api_secret:
                exchange_config["secret"] = api_secret

            exchange_class = getattr(ccxt_async, exchange_id)
            exchange = exchange_class(exchange_config)
            if sandbox:
                exchange.set_sandbox_mode(True)

        self.exchange = exchange

        logger.info(
            "CcxtVenue %s initialized (exchange=%s, settle=%s, sandbox=%s)",
            venue_name,
            exchange_id,
            settle,
            sandbox,
        )

    def name(self) -> str:
        return self._name

    def market_symbol(self, symbol: str) -> str:
        """Unified ccxt symbol for a linear perpetual, e.g. ETH/USDT:USDT."""
        return f"{symbol}/{self.settle}:{self.settle}"

    async def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        fn = getattr(self.exchange, method)
        return await retry_with_backoff(
            f"{self._name} {method}",
            lambda: fn(*args, **kwargs),
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay_seconds,
            sleep=self._sleep,
        )

    async def _read(self, method: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return await self._call(method, *args, **kwargs)
        except RetryExhaustedError as e:
            raise VenueUnavailableError(f"{self._name} {method} unavailable: {e.last_error!r}") from e

    async def _poll(self, probe, description: str) -> float:
        return await poll_until(
            probe,
            poll_interval=self.poll.interval_seconds,
            threshold=self.poll.threshold,
            timeout=self.poll.timeout_seconds,
            sleep=self._sleep,
            description=description,
        )

    # -------------------------------------------------------------------------
    # Market data
    # -------------------------------------------------------------------------

    async def _order_book(self, symbol: str, limit: int) -> Tuple[Dict, float]:
        book = await self._read("fetch_order_book", self.market_symbol(symbol), limit)
        if not book.get("asks") or not book.get("bids"):
            raise ValueError(f"{self._name}: empty order book for {symbol}")
        mid = (float(book["asks"][0][0]) + float(book["bids"][0][0])) / 2
        return book, mid

    async def read_market_data(self, symbol: str, amount: float) -> VenueQuote:
        book, mid = await self._order_book(symbol, ORDER_BOOK_DEPTH)

        fee = abs(amount) * mid * self.taker_fee
        buy_loss = fee + book_slippage(book["asks"], mid, abs(amount))
        sell_loss = fee + book_slippage(book["bids"], mid, abs(amount))

        funding = await self._read("fetch_funding_rate", self.market_symbol(symbol))
        interval_seconds = parse_funding_interval(
            funding.get("interval"), self.funding_interval_hours
        )
        rate_per_second = float(funding.get("fundingRate") or 0.0) / interval_seconds

        return VenueQuote(
            buy_loss=buy_loss,
            sell_loss=sell_loss,
            funding_rate_per_second=rate_per_second,
        )

    async def get_price(self, symbol: str) -> float:
        _, mid = await self._order_book(symbol, 1)
        return mid

    # -------------------------------------------------------------------------
    # Positions
    # -------------------------------------------------------------------------

    async def get_position(self, symbol: str) -> Tuple[float, Optional[float]]:
        """
        Current signed position size and leverage.

        Returns:
            (signed_size, leverage) with leverage None when flat and unknown.
        """
        market = self.market_symbol(symbol)
        positions = await self._read("fetch_positions", [market])

        for position in positions or []:
            if position.get("symbol") != market:
                continue
            contracts = float(position.get("contracts") or 0.0)
            sign = -1.0 if position.get("side") == "short" else 1.0
            leverage = position.get("leverage")
            return sign * contracts, float(leverage) if leverage is not None else None

        return 0.0, None

    async def set_order(self, order: Order) -> None:
        market = self.market_symbol(order.symbol)
        current_size, current_leverage = await self.get_position(order.symbol)
        delta = order.signed_size - current_size

        leverage_matches = (
            current_leverage is not None and abs(current_leverage - order.leverage) < 0.01
        )
        if abs(delta) < self.size_tolerance and (leverage_matches or order.is_flat):
            logger.debug("%s already at %.6f %s", self._name, current_size, market)
            return

        if not leverage_matches and not order.is_flat:
            await self._call("set_leverage", order.leverage, market)

        if abs(delta) >= self.size_tolerance:
            side = "buy" if delta > 0 else "sell"
            amount = float(self.exchange.amount_to_precision(market, abs(delta)))
            params = {"reduceOnly": True} if order.is_flat else {}
            logger.info("%s %s %.6f %s (target %.6f)", self._name, side, amount, market, order.signed_size)
            await self._call("create_order", market, "market", side, amount, None, params)

        async def _gap() -> float:
            size, _ = await self.get_position(order.symbol)
            return abs(size - order.signed_size)

        await poll_until(
            _gap,
            poll_interval=self.poll.interval_seconds,
            threshold=self.size_tolerance,
            timeout=self.poll.timeout_seconds,
            sleep=self._sleep,
            description=f"{self._name} position",
        )

    # -------------------------------------------------------------------------
    # Balances and transfers
    # -------------------------------------------------------------------------

    async def get_balance(self, symbols: List[str]) -> float:
        balance = await self._read("fetch_balance")
        total = balance.get("total", {}) or {}
        return float(total.get(self.settle) or 0.0)

    async def get_max_profitable_size(self, symbol: str, leverage: float) -> float:
        return leverage * 0.95 * await self.get_balance([symbol]) / await self.get_price(symbol)

    async def get_required_deposit_token(self) -> str:
        return self.deposit_token

    def _network_params(self) -> Dict[str, str]:
        return {"network": self.network} if self.network else {}

    async def deposit(self, wallet: Wallet, amount: float) -> None:
        address_info = await self._read(
            "fetch_deposit_address", self.settle, self._network_params()
        )
        deposit_address = address_info["address"]
        logger.info("%s reported deposit address %s", self._name, deposit_address)

        previous = await self.get_balance([])
        use_funding_account = bool(self.funding_account and self.trading_account)
        funding_before = await self._funding_free() if use_funding_account else 0.0
        expected = amount * (1 - self.arrival_tolerance)

        await retry_with_backoff(
            f"deposit {self._name}",
            lambda: wallet.transfer(self.deposit_token, deposit_address, amount),
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay_seconds,
            sleep=self._sleep,
        )

        credited = amount
        if use_funding_account:
            # Deposits land in the funding account first
            async def _arrived() -> float:
                return max(0.0, funding_before + expected - await self._funding_free())

            await self._poll(_arrived, f"{self._name} deposit arrival")
            credited = min(amount, await self._funding_free() - funding_before)
            await self._call(
                "transfer", self.settle, credited, self.funding_account, self.trading_account
            )

        async def _gap() -> float:
            current = await self.get_balance([])
            return max(0.0, previous + credited * (1 - self.arrival_tolerance) - current)

        await self._poll(_gap, f"{self._name} deposit")

    async def _funding_free(self) -> float:
        funds = await self._read("fetch_balance", {"type": self.funding_account})
        return float((funds.get("free", {}) or {}).get(self.settle) or 0.0)

    async def withdraw(self, to_address: str, amount: float) -> None:
        previous = await self.wallet.balance_of(self.deposit_token, to_address)

        if self.funding_account and self.trading_account:
            await self._call(
                "transfer", self.settle, amount, self.trading_account, self.funding_account
            )

        result = await self._call(
            "withdraw", self.settle, amount, to_address, None, self._network_params()
        )
        logger.info("%s withdraw result %s", self._name, result.get("id") if result else None)

        async def _gap() -> float:
            increase = await self.wallet.balance_of(self.deposit_token, to_address) - previous
            return 0.0 if increase > 0 else amount

        await self._poll(_gap, f"{self._name} withdrawal")

    async def close(self) -> None:
        await self.exchange.close()
