"""
Mock Exchange Gateway

In-memory exchange for offline development and tests.

Use cases:
- Unit testing without API access
- Scenario tests (fills, rejections, timeouts, outages)

Orders are IOC: they fill immediately at the current price or fail. Failures
can be injected per operation: rejected orders, raised transport errors, or
delays that trip a caller's timeout.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .gateway import ExchangeGateway
from .types import AssetInfo, ExchangePosition, OrderRequest, OrderResult, OrderType


@dataclass
class MockExchangeConfig:
    """Initial state of the mock exchange."""
    account_value: float = 1000.0
    prices: Dict[str, float] = field(default_factory=lambda: {
        "SOL": 100.0,
        "ETH": 3000.0,
        "BTC": 60000.0,
    })
    sz_decimals: Dict[str, int] = field(default_factory=lambda: {
        "SOL": 2,
        "ETH": 4,
        "BTC": 5,
    })
    default_sz_decimals: int = 2


class MockExchangeGateway(ExchangeGateway):
    """
    Mock gateway with settable account state.

    Usage:
        gateway = MockExchangeGateway()
        gateway.set_position("SOL", 10.0, 100.0)
        gateway.fail_next_orders(1, "insufficient margin")
        gateway.set_delay("get_account_value", 5.0)
    """

    def __init__(self, config: Optional[MockExchangeConfig] = None):
        self._config = config or MockExchangeConfig()
        self.account_value = self._config.account_value
        self._prices: Dict[str, float] = dict(self._config.prices)
        self._positions: Dict[str, ExchangePosition] = {}

        self.orders: List[OrderRequest] = []
        self.call_counts: Dict[str, int] = defaultdict(int)

        self._order_failures: List[str] = []
        self._raise_on: Dict[str, List[Exception]] = defaultdict(list)
        self._delays: Dict[str, float] = {}
        self.closed = False

    # ----- state control -----

    def set_price(self, symbol: str, price: float):
        self._prices[symbol] = price

    def set_account_value(self, value: float):
        self.account_value = value

    def set_position(self, symbol: str, size: float, entry_price: float):
        if size == 0:
            self._positions.pop(symbol, None)
        else:
            self._positions[symbol] = ExchangePosition(symbol, size, entry_price)

    def remove_position(self, symbol: str):
        self._positions.pop(symbol, None)

    def position_size(self, symbol: str) -> float:
        position = self._positions.get(symbol)
        return position.size if position else 0.0

    # ----- failure injection -----

    def fail_next_orders(self, count: int = 1, error: str = "Order rejected"):
        """Next `count` orders come back as exchange rejections."""
        self._order_failures.extend([error] * count)

    def raise_on(self, operation: str, error: Exception = None, count: int = 1):
        """Next `count` calls to `operation` raise `error`."""
        error = error or ConnectionError(f"{operation} unreachable")
        self._raise_on[operation].extend([error] * count)

    def set_delay(self, operation: str, seconds: float):
        """Sleep before answering `operation` (0 clears)."""
        if seconds <= 0:
            self._delays.pop(operation, None)
        else:
            self._delays[operation] = seconds

    async def _enter(self, operation: str):
        self.call_counts[operation] += 1
        delay = self._delays.get(operation)
        if delay:
            await asyncio.sleep(delay)
        pending = self._raise_on.get(operation)
        if pending:
            raise pending.pop(0)

    # ----- gateway contract -----

    async def get_account_value(self) -> float:
        await self._enter("get_account_value")
        return self.account_value

    async def get_positions(self) -> List[ExchangePosition]:
        await self._enter("get_positions")
        return list(self._positions.values())

    async def get_market_price(self, symbol: str) -> float:
        await self._enter("get_market_price")
        if symbol not in self._prices:
            raise KeyError(f"No price for {symbol}")
        return self._prices[symbol]

    async def get_asset_info(self, symbol: str) -> AssetInfo:
        await self._enter("get_asset_info")
        names = sorted(set(self._prices) | set(self._config.sz_decimals))
        index = names.index(symbol) if symbol in names else len(names)
        return AssetInfo(
            name=symbol,
            index=index,
            sz_decimals=self._config.sz_decimals.get(symbol, self._config.default_sz_decimals),
        )

    async def place_order(self, request: OrderRequest) -> OrderResult:
        await self._enter("place_order")
        self.orders.append(request)

        if self._order_failures:
            return OrderResult.failure(self._order_failures.pop(0))

        price = self._prices.get(request.symbol)
        if price is None:
            return OrderResult.failure(f"Unknown asset {request.symbol}")
        if request.order_type == OrderType.LIMIT:
            if request.limit_price is None:
                return OrderResult.failure("Limit order requires limit_price")
            crosses = request.limit_price >= price if request.is_buy else request.limit_price <= price
            if not crosses:
                # IOC: nothing to match at this price
                return OrderResult.failure("Order could not immediately match")

        current = self._positions.get(request.symbol)
        current_size = current.size if current else 0.0
        delta = request.size if request.is_buy else -request.size

        if request.reduce_only:
            if current_size == 0 or (current_size > 0) == request.is_buy:
                return OrderResult.failure("Reduce only order would increase position")
            if abs(delta) > abs(current_size):
                delta = -current_size

        new_size = round(current_size + delta, 10)
        if new_size == 0:
            self._positions.pop(request.symbol, None)
        elif current is None or (current_size > 0) != (new_size > 0):
            self._positions[request.symbol] = ExchangePosition(request.symbol, new_size, price)
        elif abs(new_size) > abs(current_size):
            entry = (
                abs(current_size) * current.entry_price + abs(delta) * price
            ) / abs(new_size)
            self._positions[request.symbol] = ExchangePosition(request.symbol, new_size, entry)
        else:
            self._positions[request.symbol] = ExchangePosition(
                request.symbol, new_size, current.entry_price
            )

        return OrderResult.success(
            order_id=request.client_order_id,
            filled_size=abs(delta),
            average_price=price,
        )

    async def close(self):
        self.closed = True
