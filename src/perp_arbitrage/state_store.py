"""
Trade State Persistence

Stores the single open-trade record as JSON so the bot can resume an
open position after a restart.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger("perp_arb.state_store")


class StateFileError(Exception):
    """Raised when the state file exists but cannot be parsed."""


@dataclass(frozen=True)
class TradeRecord:
    """
    An open arbitrage trade.

    Exists iff a position is open on both venues, or a close has started
    and not yet finished. ``closing`` is set once the close decision is
    persisted; ``fee_due`` is set once both legs are flat and the profit
    fee is known.
    """

    long_venue: str
    short_venue: str
    starting_total_balance: float
    closing: bool = False
    fee_due: Optional[float] = None

    def mark_closing(self) -> "TradeRecord":
        return replace(self, closing=True)

    def mark_flat(self, fee: float) -> "TradeRecord":
        return replace(self, closing=True, fee_due=fee)

    def to_dict(self) -> Dict:
        """Convert to the persisted JSON shape."""
        data = {
            "longMarket": self.long_venue,
            "shortMarket": self.short_venue,
            "startBalance": self.starting_total_balance,
        }
        if self.closing:
            data["closing"] = True
        if self.fee_due is not None:
            data["feeDue"] = self.fee_due
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "TradeRecord":
        """Build a record from the persisted JSON shape."""
        return cls(
            long_venue=str(data["longMarket"]),
            short_venue=str(data["shortMarket"]),
            starting_total_balance=float(data["startBalance"]),
            closing=bool(data.get("closing", False)),
            fee_due=float(data["feeDue"]) if data.get("feeDue") is not None else None,
        )


class StateStore:
    """
    JSON file store for the current TradeRecord.

    The file holds either ``null`` or a record object. Writes go to a
    temporary file in the same directory which then replaces the target.
    """

    def __init__(self, path: Union[str, Path] = "state.json"):
        self.path = Path(path)

    def load(self) -> Optional[TradeRecord]:
        """
        Load the persisted record.

        Returns:
            The record, or None if the file is missing or holds null.

        Raises:
            StateFileError: If the file content is not a valid record.
        """
        if not self.path.exists():
            logger.info("No existing state file at %s", self.path)
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if data is None:
                return None
            record = TradeRecord.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            raise StateFileError(f"Invalid state file {self.path}: {e}") from e

        logger.info(
            "Loaded open trade: LONG %s / SHORT %s, start balance %.4f",
            record.long_venue,
            record.short_venue,
            record.starting_total_balance,
        )
        if record.closing:
            logger.warning("Resuming an unfinished close (fee due: %s)", record.fee_due)
        return record

    def save(self, record: Optional[TradeRecord]) -> None:
        """Atomically persist ``record`` (None clears the trade)."""
        payload = json.dumps(record.to_dict() if record else None)

        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.debug("State saved to %s: %s", self.path, payload)
