"""
Trade State Machine

Two states: Idle (no TradeRecord) and Open (TradeRecord present). An Open
record marked ``closing`` is a close in progress.
``TradeEngine.step`` evaluates the current state and performs at most one
transition, returning the record that should be persisted next.

The engine never persists state itself and never catches venue errors:
a failed transition leaves the caller's record untouched so the next
iteration retries it from scratch.
"""

import logging
from typing import Dict, Mapping, Optional

from . import calculator
from .config import ArbConfig, TradeOptions
from .state_store import TradeRecord
from .venue import Converter, Order, PerpVenue, VenueQuote, Wallet

logger = logging.getLogger("perp_arb.trade_engine")

# Size used to sample funding rates while a trade is open
MONITOR_QUOTE_SIZE = 1.0


class UnknownVenueError(Exception):
    """Raised when a persisted record names a venue that is not configured."""


class TradeEngine:
    """
    Opens, monitors, rebalances and closes a two-venue funding spread trade.

    Responsible for:
    - Choosing the long and short venue from current funding rates
    - Deciding whether the spread pays for the entry costs
    - Keeping collateral split 50/50 between the two venues
    - Flattening both legs and settling the fee when the spread inverts
    """

    def __init__(
        self,
        venues: Mapping[str, PerpVenue],
        wallet: Wallet,
        converter: Optional[Converter],
        config: ArbConfig,
    ):
        """
        Initialize the engine.

        Args:
            venues: Venue name -> adapter, exactly two entries
            wallet: Holder used as the waypoint for collateral transfers
            converter: Asset converter, required only if deposit tokens differ
            config: Runtime configuration
        """
        if len(venues) != 2:
            raise ValueError(f"Exactly two venues are supported, got {len(venues)}")

        self.venues: Dict[str, PerpVenue] = dict(venues)
        self.wallet = wallet
        self.converter = converter
        self.config = config

        logger.info(
            "TradeEngine initialized: venues=%s, symbol=%s, leverage=%.2fx, rebalance=%.1f%%",
            ", ".join(self.venues),
            config.symbol,
            config.leverage,
            config.rebalance_threshold * 100,
        )

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    async def step(self, record: Optional[TradeRecord]) -> Optional[TradeRecord]:
        """
        Run one state-machine step.

        A close runs over three persisted steps so it can resume after a
        crash or a failed save: Open -> closing -> flat (fee known) -> Idle.
        The fee itself is paid by ``settle_fee`` once Idle is persisted.

        Args:
            record: Current persisted record (None = Idle)

        Returns:
            The record after this step. Same object if nothing changed.
        """
        if record is None:
            return await self.try_open()
        if record.fee_due is not None:
            logger.info("Trade closed: LONG %s / SHORT %s", record.long_venue, record.short_venue)
            return None
        if record.closing:
            return await self.close(record)
        return await self.monitor(record)

    async def try_open(self) -> Optional[TradeRecord]:
        """Idle -> Open if the best spread is projected to be profitable."""
        symbol = self.config.symbol
        total_balance = await self.total_balance()
        logger.info("current balance %.4f", total_balance)

        first_venue = next(iter(self.venues.values()))
        reference_price = await first_venue.get_price(symbol)
        size = calculator.estimate_size(total_balance, self.config.leverage, reference_price)

        logger.info(
            "estimated trade size %.6f %s (= %.2f USD)",
            size,
            symbol,
            self.config.leverage * total_balance / 2,
        )

        quotes: Dict[str, VenueQuote] = {}
        for name, venue in self.venues.items():
            quotes[name] = await venue.read_market_data(symbol, size)

        selection = calculator.select_long_short(quotes)
        logger.info(
            "calculated current best funding rate: %.4f%%/yr",
            calculator.annualized_rate_pct(selection.spread),
        )
        logger.info(
            "LONG  %s rate=%.3e buy_loss=%.4f",
            selection.long_venue,
            selection.long_quote.funding_rate_per_second,
            selection.long_quote.buy_loss,
        )
        logger.info(
            "SHORT %s rate=%.3e sell_loss=%.4f",
            selection.short_venue,
            selection.short_quote.funding_rate_per_second,
            selection.short_quote.sell_loss,
        )

        profit = calculator.projected_profit(
            selection.spread,
            size,
            self.config.min_profit_time,
            selection.long_quote.buy_loss,
            selection.short_quote.sell_loss,
        )
        logger.info("calculated time period profitability %.4f", profit)

        if profit <= 0:
            return None

        await self.apply_position(
            self.venues[selection.long_venue],
            self.venues[selection.short_venue],
            self.config.trade_options(),
        )

        record = TradeRecord(
            long_venue=selection.long_venue,
            short_venue=selection.short_venue,
            starting_total_balance=total_balance,
        )
        logger.info(
            "Trade opened: LONG %s / SHORT %s, start balance %.4f",
            record.long_venue,
            record.short_venue,
            record.starting_total_balance,
        )
        return record

    async def monitor(self, record: TradeRecord) -> Optional[TradeRecord]:
        """Open -> Open (hold or rebalance) or Open -> Idle (close)."""
        long_venue = self._venue(record.long_venue)
        short_venue = self._venue(record.short_venue)
        symbol = self.config.symbol

        long_quote = await long_venue.read_market_data(symbol, MONITOR_QUOTE_SIZE)
        short_quote = await short_venue.read_market_data(symbol, MONITOR_QUOTE_SIZE)
        spread = short_quote.funding_rate_per_second - long_quote.funding_rate_per_second

        logger.info(
            "calculated current trade profitability %.4f%%/yr",
            calculator.annualized_rate_pct(spread),
        )

        if spread < 0:
            logger.info("existing trade is not profitable. stop")
            return record.mark_closing()

        long_balance = await long_venue.get_balance([symbol])
        short_balance = await short_venue.get_balance([symbol])
        logger.info("current balance %.4f", long_balance + short_balance)

        if calculator.needs_rebalance(long_balance, short_balance, self.config.rebalance_threshold):
            logger.info("rebalance required")
            await self.apply_position(
                long_venue,
                short_venue,
                self.config.trade_options(rebalance_threshold=0.0),
            )

        return record

    async def close(self, record: TradeRecord) -> TradeRecord:
        """
        Flatten both legs and work out the fee owed on profit.

        Safe to repeat: legs that are already flat are left alone.

        Returns:
            The record marked flat with the fee due (0.0 when none).
        """
        long_venue = self._venue(record.long_venue)
        short_venue = self._venue(record.short_venue)

        await self.flatten(long_venue, short_venue, self.config.symbol)

        new_balance = await self.total_balance()
        profit = new_balance - record.starting_total_balance
        logger.info("total profitability for trade: %.4f", profit)

        fee = 0.0
        if profit > 0 and self.config.fee_recipient and self.config.fee_ratio > 0:
            fee = profit * self.config.fee_ratio
        return record.mark_flat(fee)

    async def settle_fee(self, record: TradeRecord) -> float:
        """
        Send the fee due on a finished trade to the fee recipient.

        Call only after Idle has been persisted, so the fee is never sent
        twice for the same trade.

        Returns:
            The amount sent.
        """
        fee = record.fee_due or 0.0
        if fee <= 0 or not self.config.fee_recipient:
            return 0.0
        logger.info("sending fee of %.4f to %s", fee, self.config.fee_recipient)
        await self._venue(record.long_venue).withdraw(self.config.fee_recipient, fee)
        return fee

    # =========================================================================
    # POSITION HELPERS
    # =========================================================================

    async def apply_position(
        self,
        long_venue: PerpVenue,
        short_venue: PerpVenue,
        options: TradeOptions,
    ) -> float:
        """
        Rebalance collateral if needed, then set both legs.

        The short leg is set first so the pair is never net long while
        the position is being built.

        Returns:
            The position size applied to each leg.
        """
        logger.info(
            "apply %s LONG %s / SHORT %s %s %.2fx",
            self.wallet.address,
            long_venue.name(),
            short_venue.name(),
            options.symbol,
            options.leverage,
        )

        long_balance = await long_venue.get_balance([options.symbol])
        short_balance = await short_venue.get_balance([options.symbol])

        plan = calculator.rebalance_amount(long_balance, short_balance, options.rebalance_threshold)
        if plan is not None:
            logger.info("rebalance required: transfer %.4f %s -> %s", plan.amount, plan.from_leg, plan.to_leg)
            if plan.from_leg == "long":
                await self.transfer_between_venues(long_venue, short_venue, plan.amount)
            else:
                await self.transfer_between_venues(short_venue, long_venue, plan.amount)

        size = calculator.position_size(
            options.leverage,
            await long_venue.get_balance([options.symbol]),
            await short_venue.get_balance([options.symbol]),
            await long_venue.get_price(options.symbol),
            await short_venue.get_price(options.symbol),
        )

        logger.info("set order %s %.6f %.2fx", short_venue.name(), -size, options.leverage)
        await short_venue.set_order(Order(options.symbol, -size, options.leverage))

        logger.info("set order %s %.6f %.2fx", long_venue.name(), size, options.leverage)
        await long_venue.set_order(Order(options.symbol, size, options.leverage))

        return size

    async def flatten(self, long_venue: PerpVenue, short_venue: PerpVenue, symbol: str) -> None:
        """Close both legs, short first, without moving collateral."""
        logger.info("flatten SHORT %s", short_venue.name())
        await short_venue.set_order(Order(symbol, 0.0, 1.0))
        logger.info("flatten LONG %s", long_venue.name())
        await long_venue.set_order(Order(symbol, 0.0, 1.0))

    async def transfer_between_venues(
        self,
        from_venue: PerpVenue,
        to_venue: PerpVenue,
        amount: float,
    ) -> float:
        """
        Move collateral from one venue to another through the wallet.

        Converts between collateral assets when the venues require
        different deposit tokens.

        Returns:
            Amount deposited at the destination.
        """
        await from_venue.withdraw(self.wallet.address, amount)

        amount_to_deposit = amount
        src_token = await from_venue.get_required_deposit_token()
        dst_token = await to_venue.get_required_deposit_token()
        if src_token != dst_token:
            if self.converter is None:
                raise RuntimeError(
                    f"No converter configured for {src_token} -> {dst_token}"
                )
            amount_to_deposit = await self.converter.convert(
                self.wallet, src_token, dst_token, amount
            )
            logger.info(
                "converted %.4f %s -> %.4f %s", amount, src_token, amount_to_deposit, dst_token
            )

        await to_venue.deposit(self.wallet, amount_to_deposit)
        return amount_to_deposit

    async def total_balance(self) -> float:
        """Sum of balances across all venues."""
        total = 0.0
        for venue in self.venues.values():
            total += await venue.get_balance([self.config.symbol])
        return total

    def _venue(self, name: str) -> PerpVenue:
        try:
            return self.venues[name]
        except KeyError:
            raise UnknownVenueError(
                f"Venue '{name}' from the persisted trade is not configured "
                f"(known: {', '.join(self.venues)})"
            ) from None
