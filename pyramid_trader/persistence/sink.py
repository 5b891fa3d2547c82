"""
Persistence sink contract.

The engine hands signal, trade and position records to a sink after each
decision. Sinks are fire-and-forget from the engine's point of view: a
failing sink never blocks or rolls back a trading decision.
"""

import abc
import time
from dataclasses import dataclass, field
from typing import Optional

from ..position.types import PyramidState


@dataclass
class SignalRecord:
    """An inbound signal and what became of it."""
    symbol: str
    action: str
    status: str  # "executed" | "rejected" | "failed" | "ignored"
    price: Optional[float] = None
    strategy: Optional[str] = None
    account_id: Optional[str] = None
    reason: Optional[str] = None
    received_at: float = field(default_factory=time.time)


@dataclass
class TradeRecord:
    """A confirmed order."""
    symbol: str
    side: str  # "buy" | "sell"
    size: float
    price: float
    order_type: str
    reduce_only: bool
    reason: str
    pyramid_level: int
    order_id: Optional[str] = None
    account_id: Optional[str] = None
    executed_at: float = field(default_factory=time.time)


class PersistenceSink(abc.ABC):
    """Durability sink for signal/trade/position records."""

    @abc.abstractmethod
    def record_signal(self, record: SignalRecord) -> None:
        """Persist a signal outcome."""

    @abc.abstractmethod
    def record_trade(self, record: TradeRecord) -> None:
        """Persist a confirmed trade."""

    @abc.abstractmethod
    def record_position(self, state: PyramidState) -> None:
        """Upsert the current pyramid state for a symbol."""

    @abc.abstractmethod
    def delete_position(self, symbol: str) -> None:
        """Remove a symbol's pyramid state after a full close."""

    def close(self) -> None:
        """Flush and release resources."""


class NullSink(PersistenceSink):
    """Discards everything."""

    def record_signal(self, record: SignalRecord) -> None:
        pass

    def record_trade(self, record: TradeRecord) -> None:
        pass

    def record_position(self, state: PyramidState) -> None:
        pass

    def delete_position(self, symbol: str) -> None:
        pass
