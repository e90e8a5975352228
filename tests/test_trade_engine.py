"""
Unit tests for the trade state machine.

Scenarios run against paper venues on a shared ledger so balances, fees
and funding accrue the way they would on a live pair.
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.perp_arbitrage import (
    Order,
    PerpVenue,
    TradeEngine,
    TradeRecord,
    UnknownVenueError,
    VenueQuote,
)
from src.perp_arbitrage.venues import PaperConverter


def mock_venue(name, rate, balance=5000.0, price=2000.0, token="USDT", calls=None):
    """PerpVenue mock reporting fixed market data."""
    venue = MagicMock(spec=PerpVenue)
    venue.name.return_value = name
    venue.read_market_data = AsyncMock(return_value=VenueQuote(1.0, 1.0, rate))
    venue.get_balance = AsyncMock(return_value=balance)
    venue.get_price = AsyncMock(return_value=price)
    venue.get_required_deposit_token = AsyncMock(return_value=token)
    venue.withdraw = AsyncMock(return_value=None)
    venue.deposit = AsyncMock(return_value=None)

    async def _set_order(order):
        if calls is not None:
            calls.append((name, order))

    venue.set_order = AsyncMock(side_effect=_set_order)
    return venue


class TestTradeEngineOpen:
    """Idle -> Open transitions."""

    @pytest.fixture
    def venues(self, make_paper_venue):
        return {
            "synthetix": make_paper_venue("synthetix", rate=-0.0001),
            "bybit": make_paper_venue("bybit", rate=0.0002),
        }

    @pytest.fixture
    def engine(self, venues, wallet, arb_config):
        return TradeEngine(venues, wallet, None, arb_config)

    def test_requires_two_venues(self, make_paper_venue, wallet, arb_config):
        """Should reject anything but a venue pair."""
        with pytest.raises(ValueError):
            TradeEngine({"a": make_paper_venue("a")}, wallet, None, arb_config)

    def test_opens_profitable_trade(self, engine, venues):
        """Should go long the low-rate venue and short the high-rate venue."""
        record = asyncio.run(engine.step(None))

        assert record == TradeRecord("synthetix", "bybit", 10000.0)

        expected_size = 2.0 * 0.95 * 5000 / 2000
        assert venues["synthetix"].position_size == pytest.approx(expected_size)
        assert venues["bybit"].position_size == pytest.approx(-expected_size)
        assert venues["synthetix"].leverage == 2.0

    def test_balance_only_changes_by_fees(self, engine, venues):
        """Opening should cost exactly the trading fees charged."""
        asyncio.run(engine.step(None))

        fees = venues["synthetix"].total_fees + venues["bybit"].total_fees
        assert fees > 0
        assert asyncio.run(engine.total_balance()) == pytest.approx(10000.0 - fees)

    def test_stays_idle_without_spread(self, make_paper_venue, wallet, arb_config):
        """Equal rates should not open a trade."""
        venues = {"a": make_paper_venue("a", rate=1e-8), "b": make_paper_venue("b", rate=1e-8)}
        engine = TradeEngine(venues, wallet, None, arb_config)

        assert asyncio.run(engine.step(None)) is None
        assert venues["a"].position_size == 0
        assert venues["b"].position_size == 0

    def test_sizes_from_scenario(self, wallet, arb_config):
        """10000 at 2x and price 2000 should quote a size of 5."""
        low = mock_venue("low", -0.0001)
        high = mock_venue("high", 0.0002)
        engine = TradeEngine({"low": low, "high": high}, wallet, None, arb_config)

        record = asyncio.run(engine.step(None))

        low.read_market_data.assert_awaited_with("ETH", pytest.approx(5.0))
        assert record.long_venue == "low"
        assert record.short_venue == "high"

    def test_short_leg_set_first(self, wallet, arb_config):
        """Should set the short leg before the long leg."""
        calls = []
        low = mock_venue("low", -0.0001, calls=calls)
        high = mock_venue("high", 0.0002, calls=calls)
        engine = TradeEngine({"low": low, "high": high}, wallet, None, arb_config)

        asyncio.run(engine.step(None))

        assert [name for name, _ in calls] == ["high", "low"]
        assert calls[0][1].signed_size < 0 < calls[1][1].signed_size

    def test_failed_open_propagates(self, wallet, arb_config):
        """Venue errors should surface to the caller unchanged."""
        low = mock_venue("low", -0.0001)
        high = mock_venue("high", 0.0002)
        high.set_order.side_effect = RuntimeError("rejected")
        engine = TradeEngine({"low": low, "high": high}, wallet, None, arb_config)

        with pytest.raises(RuntimeError):
            asyncio.run(engine.step(None))
        low.set_order.assert_not_awaited()


class TestTradeEngineMonitor:
    """Open -> Open and Open -> Idle transitions."""

    @pytest.fixture
    def venues(self, make_paper_venue):
        return {
            "synthetix": make_paper_venue("synthetix", rate=-0.0001),
            "bybit": make_paper_venue("bybit", rate=0.0002),
        }

    @pytest.fixture
    def engine(self, venues, wallet, arb_config):
        return TradeEngine(venues, wallet, None, arb_config)

    @pytest.fixture
    def open_record(self, engine):
        return asyncio.run(engine.step(None))

    def test_holds_while_profitable(self, engine, open_record, venues):
        """Should keep the same record when nothing changed."""
        assert asyncio.run(engine.step(open_record)) is open_record
        assert venues["bybit"].position_size < 0

    def test_closes_on_inverted_spread(self, engine, open_record, venues, ledger, clock):
        """Should mark the close, flatten both legs, then go Idle and pay profit * fee_ratio."""
        clock.advance(100)
        venues["synthetix"].set_funding_rate(0.00001)
        venues["bybit"].set_funding_rate(0.0)

        closing = asyncio.run(engine.step(open_record))

        assert closing.closing
        assert closing.fee_due is None
        assert venues["bybit"].position_size < 0

        flat = asyncio.run(engine.step(closing))

        assert venues["synthetix"].position_size == 0
        assert venues["bybit"].position_size == 0
        assert flat.fee_due > 0
        assert ledger.balance_of("USDT", "paper:treasury") == 0

        assert asyncio.run(engine.step(flat)) is None
        sent = asyncio.run(engine.settle_fee(flat))

        fee = ledger.balance_of("USDT", "paper:treasury")
        total_after = asyncio.run(engine.total_balance())
        profit = total_after + fee - open_record.starting_total_balance
        assert profit > 0
        assert fee == pytest.approx(sent)
        assert fee == pytest.approx(profit * 0.1)

    def test_close_continues_after_spread_recovers(self, engine, open_record, venues):
        """A close in progress should finish even if the spread turned profitable again."""
        venues["synthetix"].set_order = AsyncMock(side_effect=ConnectionError("rpc down"))

        with pytest.raises(ConnectionError):
            asyncio.run(engine.step(open_record.mark_closing()))
        assert venues["bybit"].position_size == 0

        del venues["synthetix"].set_order
        flat = asyncio.run(engine.step(open_record.mark_closing()))

        assert venues["synthetix"].position_size == 0
        assert flat.fee_due is not None

    def test_repeated_close_step_does_not_trade_again(self, engine, open_record):
        """Flattening again after both legs are flat should leave balances alone."""
        closing = open_record.mark_closing()
        first = asyncio.run(engine.step(closing))
        total = asyncio.run(engine.total_balance())

        second = asyncio.run(engine.step(closing))

        assert asyncio.run(engine.total_balance()) == pytest.approx(total)
        assert second.fee_due == pytest.approx(first.fee_due)

    def test_no_fee_on_loss(self, engine, open_record, venues, ledger):
        """A losing trade should close without a fee transfer."""
        venues["synthetix"].set_funding_rate(0.00001)
        venues["bybit"].set_funding_rate(0.0)

        flat = asyncio.run(engine.step(open_record.mark_closing()))

        assert flat.fee_due == 0.0
        assert asyncio.run(engine.step(flat)) is None
        assert asyncio.run(engine.settle_fee(flat)) == 0.0
        assert ledger.balance_of("USDT", "paper:treasury") == 0

    def test_rebalances_collateral(self, engine, open_record, venues, ledger, wallet):
        """Should move collateral back to an even split while open."""
        ledger.adjust("USDT", venues["synthetix"].account, 2000)
        ledger.adjust("USDT", venues["bybit"].account, -2000)

        result = asyncio.run(engine.step(open_record))

        assert result is open_record
        long_balance = asyncio.run(venues["synthetix"].get_balance(["ETH"]))
        short_balance = asyncio.run(venues["bybit"].get_balance(["ETH"]))
        assert abs(long_balance - short_balance) < 1.0
        assert ledger.balance_of("USDT", wallet.address) == pytest.approx(0.0, abs=1e-6)
        assert venues["synthetix"].position_size == pytest.approx(-venues["bybit"].position_size)

    def test_unknown_venue(self, engine):
        """A record naming an unconfigured venue should raise."""
        with pytest.raises(UnknownVenueError):
            asyncio.run(engine.step(TradeRecord("ftx", "bybit", 1000.0)))


class TestTransferBetweenVenues:
    """Collateral moves through the wallet."""

    def test_same_token(self, make_paper_venue, wallet, arb_config):
        """Should withdraw to the wallet and deposit the same amount."""
        a = make_paper_venue("a")
        b = make_paper_venue("b")
        engine = TradeEngine({"a": a, "b": b}, wallet, None, arb_config)

        moved = asyncio.run(engine.transfer_between_venues(a, b, 1000))

        assert moved == 1000
        assert a.collateral == pytest.approx(4000)
        assert b.collateral == pytest.approx(6000)

    def test_converts_between_tokens(self, make_paper_venue, ledger, wallet, arb_config):
        """Should convert when the venues need different deposit tokens."""
        a = make_paper_venue("a")
        b = make_paper_venue("b", deposit_token="sUSD")
        converter = PaperConverter(ledger, fee_rate=0.0005, rates={("USDT", "sUSD"): 1.0})
        engine = TradeEngine({"a": a, "b": b}, wallet, converter, arb_config)

        moved = asyncio.run(engine.transfer_between_venues(a, b, 1000))

        assert moved == pytest.approx(999.5)
        assert b.collateral == pytest.approx(5999.5)
        assert ledger.balance_of("USDT", wallet.address) == pytest.approx(0.0)

    def test_missing_converter(self, make_paper_venue, wallet, arb_config):
        """Should refuse to deposit an asset the venue does not accept."""
        a = make_paper_venue("a")
        b = make_paper_venue("b", deposit_token="sUSD")
        engine = TradeEngine({"a": a, "b": b}, wallet, None, arb_config)

        with pytest.raises(RuntimeError):
            asyncio.run(engine.transfer_between_venues(a, b, 1000))

    def test_flatten_targets_zero(self, wallet, arb_config):
        """Closing should order both legs to size 0."""
        calls = []
        long_venue = mock_venue("long", 0.0, calls=calls)
        short_venue = mock_venue("short", 0.0, calls=calls)
        engine = TradeEngine({"long": long_venue, "short": short_venue}, wallet, None, arb_config)

        asyncio.run(engine.flatten(long_venue, short_venue, "ETH"))

        assert calls == [("short", Order("ETH", 0.0, 1.0)), ("long", Order("ETH", 0.0, 1.0))]
