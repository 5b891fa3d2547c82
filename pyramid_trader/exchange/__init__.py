"""
Exchange Module.

Everything that talks to an exchange goes through ExchangeGateway:

- Types: OrderRequest, OrderResult, ExchangePosition, AssetInfo
- Gateway: contract plus GuardedGateway (timeouts, read retries, breaker)
- Circuit Breaker: suspends new entries after repeated failures
- Hyperliquid: aiohttp info reads, IOC orders via hyperliquid-python-sdk
- Mock: in-memory exchange for tests and offline runs
"""

from .types import (
    OrderType,
    OrderRequest,
    OrderResult,
    ExchangePosition,
    AssetInfo,
)

from .circuit_breaker import (
    ExchangeCircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitBreakerEvent,
)

from .gateway import (
    ExchangeGateway,
    GuardedGateway,
    GatewayConfig,
)

from .hyperliquid import (
    HyperliquidGateway,
    HyperliquidConfig,
)

from .mock import (
    MockExchangeGateway,
    MockExchangeConfig,
)

__all__ = [
    # Types
    'OrderType',
    'OrderRequest',
    'OrderResult',
    'ExchangePosition',
    'AssetInfo',
    # Circuit Breaker
    'ExchangeCircuitBreaker',
    'CircuitBreakerConfig',
    'CircuitBreakerState',
    'CircuitBreakerEvent',
    # Gateway
    'ExchangeGateway',
    'GuardedGateway',
    'GatewayConfig',
    # Hyperliquid
    'HyperliquidGateway',
    'HyperliquidConfig',
    # Mock
    'MockExchangeGateway',
    'MockExchangeConfig',
]
