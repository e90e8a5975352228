"""
Venue Adapter Contract

Capability set every perpetual-futures venue must implement, plus the
data shapes that cross it and the wallet/converter collaborators used to
move collateral between venues.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Protocol


@dataclass(frozen=True)
class VenueQuote:
    """Cost and funding snapshot for trading a given size at a venue."""

    buy_loss: float  # fees + slippage to buy the size, in quote currency
    sell_loss: float  # fees + slippage to sell the size
    funding_rate_per_second: float  # positive = longs pay shorts


@dataclass(frozen=True)
class Order:
    """
    Desired absolute position at a venue.

    Adapters compute the delta from the current position internally.
    """

    symbol: str
    signed_size: float  # positive = long, negative = short, 0 = flat
    leverage: float

    @property
    def is_flat(self) -> bool:
        return self.signed_size == 0


class Wallet(Protocol):
    """Holder of collateral outside the venues."""

    address: str

    async def transfer(self, token: str, to_address: str, amount: float) -> Any:
        """Send tokens. May return a PendingConfirmation."""
        ...

    async def balance_of(self, token: str, address: str) -> float:
        """Token balance held by any address."""
        ...


class Converter(Protocol):
    """Swaps one collateral asset for another."""

    async def convert(self, wallet: Wallet, src_token: str, dst_token: str, amount: float) -> float:
        """Convert ``amount`` of src into dst, returning the amount received."""
        ...


class PerpVenue(ABC):
    """
    Base class for perpetual-futures venues.

    Every mutating operation (set_order, deposit, withdraw) must return only
    once its effect is observable at the venue, so callers can treat the
    venue as synchronous once the coroutine completes.
    """

    @abstractmethod
    def name(self) -> str:
        """Stable identifier, used as map key and in the persisted record."""

    @abstractmethod
    async def read_market_data(self, symbol: str, amount: float) -> VenueQuote:
        """Quote the cost of trading ``amount`` and the current funding rate."""

    @abstractmethod
    async def set_order(self, order: Order) -> None:
        """Move the position to ``order.signed_size``. Idempotent."""

    @abstractmethod
    async def get_balance(self, symbols: List[str]) -> float:
        """Collateral held at the venue plus position margin."""

    @abstractmethod
    async def get_price(self, symbol: str) -> float:
        """Mid-market reference price."""

    @abstractmethod
    async def get_max_profitable_size(self, symbol: str, leverage: float) -> float:
        """Advisory position size for the current balance."""

    @abstractmethod
    async def get_required_deposit_token(self) -> str:
        """Collateral asset the venue accepts."""

    @abstractmethod
    async def deposit(self, wallet: Wallet, amount: float) -> None:
        """Move collateral from ``wallet`` into the venue."""

    @abstractmethod
    async def withdraw(self, to_address: str, amount: float) -> None:
        """Move collateral out of the venue to ``to_address``."""

    async def close(self) -> None:
        """Release network resources."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name()}>"
