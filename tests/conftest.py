"""
Pytest configuration and shared fixtures.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.perp_arbitrage import ArbConfig, PollSettings, RetrySettings
from src.perp_arbitrage.venues import PaperLedger, PaperVenue, PaperWallet


class RecordingSleep:
    """Awaitable sleep that returns immediately and records each delay."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class FakeClock:
    """Manually advanced clock for funding accrual."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_sleep():
    """Sleep that never blocks."""
    return RecordingSleep()


@pytest.fixture
def clock():
    """Frozen clock advanced by the test."""
    return FakeClock()


@pytest.fixture
def ledger():
    """Empty paper ledger."""
    return PaperLedger()


@pytest.fixture
def wallet(ledger):
    """Paper wallet on the shared ledger."""
    return PaperWallet(ledger)


@pytest.fixture
def arb_config():
    """ETH config with 2x leverage and a fee recipient."""
    return ArbConfig(
        symbol="ETH",
        leverage=2.0,
        rebalance_threshold=0.1,
        min_profit_time=3600,
        period=60,
        fee_recipient="paper:treasury",
        fee_ratio=0.1,
        retry=RetrySettings(max_attempts=2, base_delay_seconds=0.01),
        poll=PollSettings(interval_seconds=0.01),
    )


@pytest.fixture
def make_paper_venue(ledger, clock, fake_sleep, arb_config):
    """Factory for paper venues funded with ``balance`` collateral."""

    def _make(name, balance=5000.0, price=2000.0, rate=0.0, **kwargs):
        venue = PaperVenue(
            name,
            ledger,
            price=price,
            funding_rate_per_second=rate,
            retry=arb_config.retry,
            poll=arb_config.poll,
            clock=clock,
            sleep=fake_sleep,
            **kwargs,
        )
        ledger.adjust(venue.deposit_token, venue.account, balance)
        return venue

    return _make
