"""Tests for GuardedGateway call policy.

Timeouts, read retries, order single-shot and breaker accounting, all
against the in-memory mock exchange.
"""

import pytest

from pyramid_trader.errors import ExchangeError, ExchangeTimeout
from pyramid_trader.exchange.circuit_breaker import CircuitBreakerState
from pyramid_trader.exchange.gateway import GatewayConfig, GuardedGateway
from pyramid_trader.exchange.mock import MockExchangeGateway
from pyramid_trader.exchange.types import OrderRequest, OrderType


def make_gateway(**config):
    config.setdefault("retry_base_delay_ms", 1)
    config.setdefault("retry_max_delay_ms", 5)
    mock = MockExchangeGateway()
    return mock, GuardedGateway(mock, GatewayConfig(**config))


class TestReads:
    """Test read policy."""

    @pytest.mark.asyncio
    async def test_timeout_is_exchange_error(self):
        """A slow read surfaces as ExchangeTimeout (an ExchangeError)."""
        mock, gateway = make_gateway(timeout_seconds=0.05, max_read_retries=0)
        mock.set_delay("get_account_value", 1.0)

        with pytest.raises(ExchangeTimeout) as exc_info:
            await gateway.get_account_value()

        assert isinstance(exc_info.value, ExchangeError)
        assert exc_info.value.operation == "get_account_value"
        assert gateway.breaker.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_read_retried_until_success(self):
        """Transient read errors are retried with backoff."""
        mock, gateway = make_gateway(max_read_retries=2)
        mock.raise_on("get_market_price", count=2)

        price = await gateway.get_market_price("SOL")

        assert price == 100.0
        assert mock.call_counts["get_market_price"] == 3
        assert gateway.breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_read_retries_exhausted(self):
        """One breaker failure per exhausted read, not per attempt."""
        mock, gateway = make_gateway(max_read_retries=2)
        mock.raise_on("get_positions", count=3)

        with pytest.raises(ExchangeError):
            await gateway.get_positions()

        assert mock.call_counts["get_positions"] == 3
        assert gateway.breaker.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_exchange_error(self):
        mock, gateway = make_gateway(max_read_retries=0)

        with pytest.raises(ExchangeError):
            await gateway.get_market_price("NOPE")

    @pytest.mark.asyncio
    async def test_get_position_via_positions(self):
        mock, gateway = make_gateway()
        mock.set_position("SOL", 2.0, 100.0)

        position = await gateway.get_position("SOL")

        assert position.size == 2.0
        assert position.entry_price == 100.0
        assert await gateway.get_position("ETH") is None

    @pytest.mark.asyncio
    async def test_repeated_failures_trip_breaker(self):
        mock, gateway = make_gateway(max_read_retries=0)
        mock.raise_on("get_account_value", count=3)

        for _ in range(3):
            with pytest.raises(ExchangeError):
                await gateway.get_account_value()

        assert gateway.breaker.state == CircuitBreakerState.OPEN


class TestOrders:
    """Test order policy."""

    @pytest.mark.asyncio
    async def test_orders_never_retried(self):
        """A failed submission is not resent."""
        mock, gateway = make_gateway(max_read_retries=5)
        mock.raise_on("place_order", count=1)

        with pytest.raises(ExchangeError):
            await gateway.place_order(OrderRequest("SOL", True, 1.0))

        assert mock.call_counts["place_order"] == 1
        assert mock.position_size("SOL") == 0.0
        assert gateway.breaker.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_order_timeout(self):
        mock, gateway = make_gateway(order_timeout_seconds=0.05)
        mock.set_delay("place_order", 1.0)

        with pytest.raises(ExchangeTimeout):
            await gateway.place_order(OrderRequest("SOL", True, 1.0))

    @pytest.mark.asyncio
    async def test_rejection_returned_not_raised(self):
        """Exchange rejections prove reachability: no breaker failure."""
        mock, gateway = make_gateway()
        gateway.breaker.record_failure("earlier")
        mock.fail_next_orders(1, "Insufficient margin")

        result = await gateway.place_order(OrderRequest("SOL", True, 1.0))

        assert not result.ok
        assert result.error == "Insufficient margin"
        assert gateway.breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_close_closes_inner(self):
        mock, gateway = make_gateway()

        await gateway.close()

        assert mock.closed


class TestMockExchange:
    """Test the mock's fill model."""

    @pytest.mark.asyncio
    async def test_limit_buy_fills_and_weights_entry(self):
        mock = MockExchangeGateway()

        await mock.place_order(OrderRequest("SOL", True, 5.0, OrderType.LIMIT, limit_price=100.1))
        mock.set_price("SOL", 110.0)
        result = await mock.place_order(OrderRequest("SOL", True, 5.0, OrderType.LIMIT, limit_price=110.2))

        position = await mock.get_position("SOL")
        assert result.ok
        assert result.average_price == 110.0
        assert position.size == pytest.approx(10.0)
        assert position.entry_price == pytest.approx(105.0)

    @pytest.mark.asyncio
    async def test_non_crossing_limit_is_cancelled(self):
        """IOC: a limit below the market fills nothing and is rejected."""
        mock = MockExchangeGateway()

        result = await mock.place_order(OrderRequest("SOL", True, 1.0, OrderType.LIMIT, limit_price=90.0))

        assert not result.ok
        assert not result.is_filled
        assert mock.position_size("SOL") == 0.0

    @pytest.mark.asyncio
    async def test_reduce_only_cannot_open(self):
        mock = MockExchangeGateway()

        result = await mock.place_order(OrderRequest("SOL", False, 1.0, reduce_only=True))

        assert not result.ok
        assert mock.position_size("SOL") == 0.0

    @pytest.mark.asyncio
    async def test_reduce_only_clamped_to_position(self):
        mock = MockExchangeGateway()
        mock.set_position("SOL", 3.0, 100.0)

        result = await mock.place_order(OrderRequest("SOL", False, 5.0, reduce_only=True))

        assert result.ok
        assert result.filled_size == pytest.approx(3.0)
        assert mock.position_size("SOL") == 0.0
