"""
Unit tests for the paper trading venue, wallet and converter.
"""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.perp_arbitrage import Order, RetryExhaustedError
from src.perp_arbitrage.venues import InsufficientFundsError, PaperConverter, PaperLedger


class TestPaperLedger:
    """Tests for PaperLedger."""

    def test_initial_balances(self):
        """Should seed balances from the nested mapping."""
        ledger = PaperLedger({"USDT": {"alice": 100}})
        assert ledger.balance_of("USDT", "alice") == 100
        assert ledger.balance_of("USDT", "bob") == 0

    def test_move_conserves(self):
        """Transfers should conserve the total."""
        ledger = PaperLedger({"USDT": {"alice": 100}})
        ledger.move("USDT", "alice", "bob", 40)

        assert ledger.balance_of("USDT", "alice") == 60
        assert ledger.balance_of("USDT", "bob") == 40

    def test_insufficient_funds(self):
        """Should refuse to overdraw."""
        ledger = PaperLedger({"USDT": {"alice": 10}})
        with pytest.raises(InsufficientFundsError):
            ledger.move("USDT", "alice", "bob", 11)

    def test_negative_amount(self):
        """Should refuse negative transfers."""
        with pytest.raises(ValueError):
            PaperLedger().move("USDT", "alice", "bob", -1)


class TestPaperVenue:
    """Tests for PaperVenue."""

    @pytest.fixture
    def venue(self, make_paper_venue):
        return make_paper_venue("alpha", balance=5000.0, price=2000.0, rate=1e-6)

    def test_quote(self, venue):
        """Should charge fee plus slippage on the notional."""
        quote = asyncio.run(venue.read_market_data("ETH", 2.0))

        assert quote.buy_loss == pytest.approx(2.0 * 2000 * 0.0011)
        assert quote.sell_loss == quote.buy_loss
        assert quote.funding_rate_per_second == 1e-6

    def test_set_order_charges_fee(self, venue):
        """Opening a position should cost the trading fee only."""
        asyncio.run(venue.set_order(Order("ETH", 1.5, 2.0)))

        assert venue.position_size == 1.5
        assert venue.leverage == 2.0
        assert asyncio.run(venue.get_balance(["ETH"])) == pytest.approx(5000 - 1.5 * 2000 * 0.0011)

    def test_set_order_skips_when_at_target(self, venue):
        """Re-applying the same order should not charge again."""
        asyncio.run(venue.set_order(Order("ETH", 1.5, 2.0)))
        fees = venue.total_fees
        asyncio.run(venue.set_order(Order("ETH", 1.5, 2.0)))

        assert venue.total_fees == fees

    def test_mark_to_market(self, venue):
        """Balance should follow the price of an open position."""
        asyncio.run(venue.set_order(Order("ETH", 1.0, 1.0)))
        before = asyncio.run(venue.get_balance(["ETH"]))
        venue.set_price(2100.0)

        assert asyncio.run(venue.get_balance(["ETH"])) == pytest.approx(before + 100)

    def test_long_pays_positive_funding(self, venue, clock):
        """With a positive rate the long side pays notional * rate * time."""
        asyncio.run(venue.set_order(Order("ETH", 1.0, 1.0)))
        before = asyncio.run(venue.get_balance(["ETH"]))
        clock.advance(1000)

        after = asyncio.run(venue.get_balance(["ETH"]))
        assert after == pytest.approx(before - 1.0 * 2000 * 1e-6 * 1000)
        assert venue.total_funding == pytest.approx(-2.0)

    def test_short_receives_positive_funding(self, venue, clock):
        """With a positive rate the short side receives funding."""
        asyncio.run(venue.set_order(Order("ETH", -1.0, 1.0)))
        before = asyncio.run(venue.get_balance(["ETH"]))
        clock.advance(1000)

        assert asyncio.run(venue.get_balance(["ETH"])) == pytest.approx(before + 2.0)

    def test_max_profitable_size(self, venue):
        """Should size within margin with the safety haircut."""
        size = asyncio.run(venue.get_max_profitable_size("ETH", 2.0))
        assert size == pytest.approx(2.0 * 0.95 * 5000 / 2000)

    def test_deposit_and_withdraw(self, venue, ledger, wallet):
        """Should move collateral between the wallet and the venue."""
        asyncio.run(venue.withdraw(wallet.address, 1200))
        assert ledger.balance_of("USDT", wallet.address) == 1200
        assert venue.collateral == 3800

        asyncio.run(venue.deposit(wallet, 200))
        assert ledger.balance_of("USDT", wallet.address) == 1000
        assert venue.collateral == 4000

    def test_overdrawn_withdraw_exhausts_retries(self, venue, wallet, fake_sleep):
        """An impossible withdrawal should end in RetryExhaustedError."""
        with pytest.raises(RetryExhaustedError):
            asyncio.run(venue.withdraw(wallet.address, 1_000_000))

        assert len(fake_sleep.calls) == 2


class TestPaperConverter:
    """Tests for PaperConverter."""

    def test_convert(self, ledger, wallet):
        """Should swap at the configured rate minus the fee."""
        ledger.adjust("USDT", wallet.address, 1000)
        converter = PaperConverter(ledger, fee_rate=0.001, rates={("USDT", "sUSD"): 0.5})

        received = asyncio.run(converter.convert(wallet, "USDT", "sUSD", 1000))

        assert received == pytest.approx(499.5)
        assert ledger.balance_of("sUSD", wallet.address) == pytest.approx(499.5)
        assert ledger.balance_of("USDT", wallet.address) == 0
