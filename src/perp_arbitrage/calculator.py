"""
Profitability & Rebalance Calculator

Pure functions that decide which venue takes each leg, how large the
trade is, whether it pays for itself, and how much collateral to move
to keep the two venues evenly funded.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from .venue import VenueQuote

logger = logging.getLogger("perp_arb.calculator")

SECONDS_PER_YEAR = 86400 * 365

# Fraction of the smaller balance committed to a position
POSITION_SAFETY_FACTOR = 0.95


@dataclass(frozen=True)
class LongShortSelection:
    """Venue assignment for a funding spread trade."""

    long_venue: str
    short_venue: str
    long_quote: VenueQuote
    short_quote: VenueQuote

    @property
    def spread(self) -> float:
        """Funding received per second per unit of size."""
        return self.short_quote.funding_rate_per_second - self.long_quote.funding_rate_per_second


@dataclass(frozen=True)
class RebalancePlan:
    """Collateral transfer restoring a 50/50 split."""

    from_leg: str  # "long" or "short"
    to_leg: str
    amount: float


def annualized_rate_pct(rate_per_second: float) -> float:
    """Per-second funding rate expressed as percent per year."""
    return rate_per_second * SECONDS_PER_YEAR * 100


def select_long_short(quotes_by_venue: Mapping[str, VenueQuote]) -> LongShortSelection:
    """
    Assign LONG to the lowest funding rate and SHORT to the highest.

    When the rates tie, the first venue in iteration order is LONG and the
    last is SHORT so the legs stay on distinct venues.

    Args:
        quotes_by_venue: Venue name -> quote

    Returns:
        LongShortSelection

    Raises:
        ValueError: If fewer than two venues are quoted.
    """
    if len(quotes_by_venue) < 2:
        raise ValueError(f"Need at least two venues, got {len(quotes_by_venue)}")

    names = list(quotes_by_venue)
    long_venue = min(names, key=lambda n: quotes_by_venue[n].funding_rate_per_second)
    # Scan from the end so ties resolve to a different venue than min()
    short_venue = max(reversed(names), key=lambda n: quotes_by_venue[n].funding_rate_per_second)

    return LongShortSelection(
        long_venue=long_venue,
        short_venue=short_venue,
        long_quote=quotes_by_venue[long_venue],
        short_quote=quotes_by_venue[short_venue],
    )


def estimate_size(total_balance: float, leverage: float, reference_price: float) -> float:
    """
    Estimate trade size in base units.

    Capital is split across two venues, hence the division by two.
    """
    if reference_price <= 0:
        raise ValueError(f"Reference price must be positive, got {reference_price}")
    return leverage * total_balance / reference_price / 2


def projected_profit(
    spread: float,
    size: float,
    hold_seconds: float,
    entry_buy_loss: float,
    entry_sell_loss: float,
) -> float:
    """
    Expected profit of holding the spread for ``hold_seconds``.

    Args:
        spread: Short funding rate minus long funding rate, per second
        size: Position size in base units
        hold_seconds: Minimum time the spread must stay favorable
        entry_buy_loss: Cost of buying the long leg
        entry_sell_loss: Cost reported for selling the short leg

    Returns:
        spread * size * hold_seconds - entry_buy_loss + entry_sell_loss
    """
    return spread * size * hold_seconds - entry_buy_loss + entry_sell_loss


def balance_deviation(long_balance: float, short_balance: float) -> float:
    """Relative distance of the short balance from an even split."""
    half = (long_balance + short_balance) / 2
    if half <= 0:
        return 0.0
    return abs(short_balance - half) / half


def needs_rebalance(long_balance: float, short_balance: float, threshold: float) -> bool:
    """True if the split deviates from 50/50 by more than ``threshold``."""
    return balance_deviation(long_balance, short_balance) > threshold


def rebalance_amount(
    long_balance: float,
    short_balance: float,
    threshold: float,
) -> Optional[RebalancePlan]:
    """
    Compute the transfer that restores an even split.

    Args:
        long_balance: Balance at the long venue
        short_balance: Balance at the short venue
        threshold: Tolerated relative deviation before moving funds

    Returns:
        RebalancePlan moving exactly the deficit from the over-funded leg
        to the under-funded one, or None if no transfer is needed.
    """
    total = long_balance + short_balance
    if total <= 0 or not needs_rebalance(long_balance, short_balance, threshold):
        return None

    half = total / 2
    if short_balance < half:
        plan = RebalancePlan(from_leg="long", to_leg="short", amount=half - short_balance)
    else:
        plan = RebalancePlan(from_leg="short", to_leg="long", amount=half - long_balance)

    logger.debug(
        "Rebalance: long=%.4f short=%.4f -> move %.4f %s->%s",
        long_balance,
        short_balance,
        plan.amount,
        plan.from_leg,
        plan.to_leg,
    )
    return plan


def position_size(
    leverage: float,
    long_balance: float,
    short_balance: float,
    long_price: float,
    short_price: float,
) -> float:
    """
    Size both legs so each stays within its venue's margin.

    Uses the smaller balance and the larger price, with a 5% haircut for
    price movement between sizing and execution.
    """
    price = max(long_price, short_price)
    if price <= 0:
        raise ValueError(f"Prices must be positive, got {long_price} / {short_price}")
    return leverage * POSITION_SAFETY_FACTOR * min(long_balance, short_balance) / price
