"""
Exchange Types.

Order, position and asset types shared by every ExchangeGateway
implementation.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional


# Hyperliquid perps: price decimals = MAX_PRICE_DECIMALS - szDecimals
MAX_PRICE_DECIMALS = 6
MAX_SIGNIFICANT_FIGURES = 5


class OrderType(Enum):
    """Order types accepted by the gateway."""
    MARKET = "market"
    LIMIT = "limit"


@dataclass
class OrderRequest:
    """Order submission request.

    Size must already be rounded to the asset lot size and any limit price
    to its tick size.
    """
    symbol: str
    is_buy: bool
    size: float
    order_type: OrderType = OrderType.MARKET
    limit_price: Optional[float] = None
    reduce_only: bool = False
    client_order_id: Optional[str] = None

    def __post_init__(self):
        if self.client_order_id is None:
            self.client_order_id = f"ord_{int(time.time() * 1000000)}"

    @property
    def side(self) -> str:
        return "buy" if self.is_buy else "sell"


@dataclass
class OrderResult:
    """Definitive answer from the exchange for one order."""
    status: str  # "ok" | "error"
    error: Optional[str] = None
    order_id: Optional[str] = None
    filled_size: Optional[float] = None
    average_price: Optional[float] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def is_filled(self) -> bool:
        """Accepted with a positive reported fill."""
        return self.ok and bool(self.filled_size) and self.filled_size > 0

    @classmethod
    def success(cls, **kwargs) -> 'OrderResult':
        return cls(status="ok", **kwargs)

    @classmethod
    def failure(cls, error: str, **kwargs) -> 'OrderResult':
        return cls(status="error", error=error, **kwargs)


@dataclass(frozen=True)
class ExchangePosition:
    """Live position as reported by the exchange."""
    symbol: str
    size: float  # signed: + long, - short
    entry_price: float

    @property
    def abs_size(self) -> float:
        return abs(self.size)

    @property
    def is_long(self) -> bool:
        return self.size > 0

    @property
    def notional(self) -> float:
        return abs(self.size) * self.entry_price


@dataclass(frozen=True)
class AssetInfo:
    """Metadata for a single asset.

    Lot and tick sizes are derived from exchange metadata (szDecimals),
    never hardcoded per symbol.
    """
    name: str
    index: int
    sz_decimals: int
    max_leverage: int = 50
    only_isolated: bool = False

    @property
    def lot_size(self) -> float:
        return float(Decimal(1).scaleb(-self.sz_decimals))

    @property
    def price_decimals(self) -> int:
        return max(MAX_PRICE_DECIMALS - self.sz_decimals, 0)

    @property
    def tick_size(self) -> float:
        return float(Decimal(1).scaleb(-self.price_decimals))

    def round_size_down(self, size: float) -> float:
        """Floor size to a whole number of lots."""
        if size <= 0:
            return 0.0
        quantum = Decimal(1).scaleb(-self.sz_decimals)
        return float(Decimal(str(size)).quantize(quantum, rounding=ROUND_DOWN))

    def round_price(self, price: float) -> float:
        """Round price to the nearest valid tick.

        Prices are limited to MAX_SIGNIFICANT_FIGURES significant figures
        and price_decimals decimals. Integer prices are always valid.
        """
        if price <= 0:
            return 0.0
        value = Decimal(str(price))
        integer_digits = len(str(int(value))) if value >= 1 else 0
        sig_decimals = max(MAX_SIGNIFICANT_FIGURES - integer_digits, 0)
        if value < 1:
            # leading zeros after the point don't count as significant
            leading_zeros = -value.adjusted() - 1
            sig_decimals = MAX_SIGNIFICANT_FIGURES + leading_zeros
        decimals = min(self.price_decimals, sig_decimals)
        quantum = Decimal(1).scaleb(-decimals)
        return float(value.quantize(quantum, rounding=ROUND_HALF_UP))

    def is_dust(self, size: float) -> bool:
        """True when |size| is below one lot (treated as flat)."""
        return abs(size) < self.lot_size - 1e-12

    @classmethod
    def from_meta(cls, index: int, entry: Dict[str, Any]) -> 'AssetInfo':
        """Build from one element of the exchange meta universe."""
        return cls(
            name=entry["name"],
            index=index,
            sz_decimals=int(entry.get("szDecimals", 0)),
            max_leverage=int(entry.get("maxLeverage", 50)),
            only_isolated=bool(entry.get("onlyIsolated", False)),
        )
