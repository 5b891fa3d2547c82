"""
Exchange Gateway.

ExchangeGateway is the only way business logic talks to an exchange.
GuardedGateway wraps any implementation with the uniform call policy:

- Every call runs under a timeout; a timeout is an ExchangeError
- Reads retry with exponential backoff (prevents retry storms)
- Orders are never retried (a retried order can double the position)
- Every outcome feeds the exchange circuit breaker
"""

import abc
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

import aiohttp

from ..errors import ExchangeError, ExchangeTimeout
from .circuit_breaker import ExchangeCircuitBreaker
from .types import AssetInfo, ExchangePosition, OrderRequest, OrderResult

T = TypeVar("T")


class ExchangeGateway(abc.ABC):
    """Contract for an exchange adapter."""

    @abc.abstractmethod
    async def get_account_value(self) -> float:
        """Total account value in quote currency."""

    @abc.abstractmethod
    async def get_positions(self) -> List[ExchangePosition]:
        """All non-zero live positions."""

    @abc.abstractmethod
    async def get_market_price(self, symbol: str) -> float:
        """Current mark/mid price for symbol."""

    @abc.abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderResult:
        """Submit an order and wait for a definitive answer."""

    @abc.abstractmethod
    async def get_asset_info(self, symbol: str) -> AssetInfo:
        """Lot/tick metadata for symbol."""

    async def get_position(self, symbol: str) -> Optional[ExchangePosition]:
        """Live position for one symbol, or None when flat."""
        for position in await self.get_positions():
            if position.symbol == symbol:
                return position
        return None

    async def close(self):
        """Release network resources."""


@dataclass
class GatewayConfig:
    """Call policy applied by GuardedGateway."""
    timeout_seconds: float = 10.0
    order_timeout_seconds: float = 15.0
    max_read_retries: int = 2
    retry_base_delay_ms: int = 100
    retry_max_delay_ms: int = 2000
    retry_backoff_factor: float = 2.0


class GuardedGateway(ExchangeGateway):
    """Timeout, retry and breaker policy around an ExchangeGateway."""

    def __init__(
        self,
        inner: ExchangeGateway,
        config: GatewayConfig = None,
        breaker: ExchangeCircuitBreaker = None,
        logger: logging.Logger = None
    ):
        self._inner = inner
        self._config = config or GatewayConfig()
        self._breaker = breaker or ExchangeCircuitBreaker()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def breaker(self) -> ExchangeCircuitBreaker:
        return self._breaker

    @property
    def inner(self) -> ExchangeGateway:
        return self._inner

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff delay in seconds for a 0-indexed attempt."""
        delay_ms = self._config.retry_base_delay_ms * (
            self._config.retry_backoff_factor ** attempt
        )
        delay_ms = min(delay_ms, self._config.retry_max_delay_ms)
        return delay_ms / 1000.0

    async def _call_once(
        self,
        operation: str,
        factory: Callable[[], Awaitable[T]],
        timeout: float
    ) -> T:
        try:
            result = await asyncio.wait_for(factory(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ExchangeTimeout(
                f"{operation} timed out after {timeout:.1f}s", operation=operation
            )
        except ExchangeError:
            raise
        except (aiohttp.ClientError, OSError, ValueError, KeyError) as e:
            raise ExchangeError(f"{operation} failed: {e}", operation=operation) from e
        return result

    async def _read(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        attempts = self._config.max_read_retries + 1
        last_error: Optional[ExchangeError] = None

        for attempt in range(attempts):
            try:
                result = await self._call_once(operation, factory, self._config.timeout_seconds)
                self._breaker.record_success()
                return result
            except ExchangeError as e:
                last_error = e
                self._logger.warning(
                    f"Exchange read {operation} failed (attempt {attempt + 1}/{attempts}): {e}"
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(self._calculate_retry_delay(attempt))

        self._breaker.record_failure(str(last_error))
        raise last_error

    async def get_account_value(self) -> float:
        return await self._read("get_account_value", self._inner.get_account_value)

    async def get_positions(self) -> List[ExchangePosition]:
        return await self._read("get_positions", self._inner.get_positions)

    async def get_market_price(self, symbol: str) -> float:
        return await self._read(
            f"get_market_price({symbol})",
            lambda: self._inner.get_market_price(symbol)
        )

    async def get_asset_info(self, symbol: str) -> AssetInfo:
        return await self._read(
            f"get_asset_info({symbol})",
            lambda: self._inner.get_asset_info(symbol)
        )

    async def place_order(self, request: OrderRequest) -> OrderResult:
        """Submit once. Timeouts and transport errors raise ExchangeError.

        An exchange-side rejection is returned as an error OrderResult; it
        proves the exchange is reachable so it does not count against the
        breaker.
        """
        operation = f"place_order({request.symbol} {request.side} {request.size})"
        try:
            result = await self._call_once(
                operation,
                lambda: self._inner.place_order(request),
                self._config.order_timeout_seconds
            )
        except ExchangeError as e:
            self._breaker.record_failure(str(e))
            self._logger.error(f"Order submission failed: {e}")
            raise
        self._breaker.record_success()
        return result

    async def close(self):
        await self._inner.close()
