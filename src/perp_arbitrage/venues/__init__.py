"""
Venue Adapters

Concrete PerpVenue implementations, the on-chain EVM wallet, and the
paper wallet and converter used for dry runs.
"""

from .ccxt_venue import CcxtVenue, VenueUnavailableError, book_slippage, parse_funding_interval
from .evm_wallet import EvmWallet, PendingTransaction
from .factory import build_venues
from .paper import (
    InsufficientFundsError,
    PaperConverter,
    PaperLedger,
    PaperVenue,
    PaperWallet,
)

__all__ = [
    # Exchange
    "CcxtVenue",
    "book_slippage",
    "parse_funding_interval",
    "VenueUnavailableError",
    # On-chain wallet
    "EvmWallet",
    "PendingTransaction",
    # Paper trading
    "PaperLedger",
    "PaperWallet",
    "PaperConverter",
    "PaperVenue",
    "InsufficientFundsError",
    # Factory
    "build_venues",
]
