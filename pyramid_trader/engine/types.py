"""
Engine Types.

Inbound signals and the outcome of processing them.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import ValidationError
from ..position.types import PositionUpdate, SyncResult

_SYMBOL_SUFFIXES = ("-PERP", "-USD", "USDT", "PERP")


class SignalAction(Enum):
    BUY = "buy"
    SELL = "sell"


def normalize_symbol(raw: str) -> str:
    """'sol-perp' -> 'SOL', 'SOLUSDT' -> 'SOL'."""
    symbol = (raw or "").strip().upper()
    for suffix in _SYMBOL_SUFFIXES:
        if symbol.endswith(suffix) and len(symbol) > len(suffix):
            symbol = symbol[:-len(suffix)]
            break
    return symbol


@dataclass(frozen=True)
class TradingSignal:
    """Directional signal delivered by the ingestion layer."""
    action: SignalAction
    symbol: str
    price: Optional[float] = None
    strategy: str = "default"
    timestamp: float = field(default_factory=time.time)

    def validate(self):
        if not isinstance(self.action, SignalAction):
            raise ValidationError(f"Unknown signal action: {self.action!r}")
        if not self.symbol:
            raise ValidationError("Signal symbol is empty")
        if self.price is not None and self.price <= 0:
            raise ValidationError(f"Signal price must be positive: {self.price}")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'TradingSignal':
        """Parse a webhook-style payload.

        Raises:
            ValidationError: On unknown action, missing symbol or bad price
        """
        raw_action = str(payload.get("action", "")).strip().lower()
        try:
            action = SignalAction(raw_action)
        except ValueError:
            raise ValidationError(f"Unknown signal action: {payload.get('action')!r}")

        symbol = normalize_symbol(str(payload.get("symbol", "")))
        if not symbol:
            raise ValidationError("Signal symbol is empty")

        price = payload.get("price")
        if price is not None:
            try:
                price = float(price)
            except (TypeError, ValueError):
                raise ValidationError(f"Signal price is not a number: {price!r}")

        timestamp = payload.get("timestamp")
        signal = cls(
            action=action,
            symbol=symbol,
            price=price,
            strategy=str(payload.get("strategy") or "default"),
            timestamp=float(timestamp) if timestamp is not None else time.time(),
        )
        signal.validate()
        return signal


@dataclass(frozen=True)
class AccountContext:
    """Who the signal trades for."""
    account_id: str = "default"
    label: Optional[str] = None


@dataclass
class SignalResult:
    """Outcome of process_signal."""
    accepted: bool
    action: SignalAction
    symbol: str
    reason: str = ""
    order_size: float = 0.0
    order_price: Optional[float] = None
    sync_result: Optional[SyncResult] = None
    update: Optional[PositionUpdate] = None

    @classmethod
    def rejected(cls, action: SignalAction, symbol: str, reason: str, **kwargs) -> 'SignalResult':
        return cls(accepted=False, action=action, symbol=symbol, reason=reason, **kwargs)
