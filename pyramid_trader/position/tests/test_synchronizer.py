"""Tests for PositionSynchronizer.

The exchange always wins: reset, seed, size sync and entry consolidation.
"""

import pytest

from pyramid_trader.config import PyramidConfig
from pyramid_trader.errors import StateInconsistency
from pyramid_trader.exchange.mock import MockExchangeGateway
from pyramid_trader.position.synchronizer import PositionSynchronizer
from pyramid_trader.position.types import (
    Direction,
    PositionEntry,
    PyramidState,
    SyncAction,
)


def local_state(symbol="SOL", size=5.0, entry=100.0, margin=100.0, direction=Direction.LONG):
    state = PyramidState(symbol=symbol, direction=direction)
    state.add_entry(PositionEntry(size=size, entry_price=entry, margin_used=margin, timestamp=1.0))
    return state


@pytest.fixture
def gateway():
    return MockExchangeGateway()


@pytest.fixture
def states():
    return {}


@pytest.fixture
def sync(gateway, states):
    return PositionSynchronizer(gateway, PyramidConfig(), states, clock=lambda: 50.0)


class TestReconcile:
    """Test single-symbol reconciliation."""

    @pytest.mark.asyncio
    async def test_in_sync(self, gateway, states, sync):
        gateway.set_position("SOL", 5.0, 100.0)
        states["SOL"] = local_state()

        result = await sync.reconcile("SOL")

        assert result.action == SyncAction.NONE
        assert states["SOL"].last_synced_size == 5.0
        assert states["SOL"].last_sync_time == 50.0

    @pytest.mark.asyncio
    async def test_closed_on_exchange_resets(self, gateway, states, sync):
        """Position gone on the exchange -> local state dropped."""
        states["SOL"] = local_state()

        result = await sync.reconcile("SOL")

        assert result.action == SyncAction.RESET_STATE
        assert result.local_size == 5.0
        assert result.is_flat
        assert "SOL" not in states

    @pytest.mark.asyncio
    async def test_dust_counts_as_closed(self, gateway, states, sync):
        gateway.set_position("SOL", 0.004, 100.0)
        states["SOL"] = local_state()

        result = await sync.reconcile("SOL")

        assert result.action == SyncAction.RESET_STATE
        assert "SOL" not in states

    @pytest.mark.asyncio
    async def test_unknown_position_seeded(self, gateway, states, sync):
        """Untracked live position becomes a level-1 state."""
        gateway.set_position("ETH", -0.5, 3000.0)

        result = await sync.reconcile("ETH")

        state = states["ETH"]
        assert result.action == SyncAction.SEED_STATE
        assert state.current_level == 1
        assert state.direction == Direction.SHORT
        assert state.current_size == pytest.approx(0.5)
        assert state.average_entry_price == 3000.0
        assert state.total_margin_used == pytest.approx(0.5 * 3000.0 / 5.0)

    @pytest.mark.asyncio
    async def test_invalid_entry_not_seeded(self, gateway, states, sync):
        gateway.set_position("SOL", 2.0, 0.0)

        result = await sync.reconcile("SOL")

        assert result.action == SyncAction.NONE
        assert "SOL" not in states

    @pytest.mark.asyncio
    async def test_size_mismatch_scales_entries(self, gateway, states, sync):
        """Exchange size wins; average entry unchanged."""
        gateway.set_position("SOL", 2.5, 100.0)
        states["SOL"] = local_state()

        result = await sync.reconcile("SOL")

        state = states["SOL"]
        assert result.action == SyncAction.SYNC_SIZE
        assert state.current_size == pytest.approx(2.5)
        assert state.average_entry_price == pytest.approx(100.0)
        assert state.total_margin_used == pytest.approx(50.0)
        assert state.current_level == 1

    @pytest.mark.asyncio
    async def test_entry_drift_consolidates(self, gateway, states, sync):
        """Average entry off by more than the tolerance is replaced."""
        gateway.set_position("SOL", 5.0, 101.0)
        states["SOL"] = local_state()

        result = await sync.reconcile("SOL")

        state = states["SOL"]
        assert result.action == SyncAction.SYNC_ENTRY
        assert state.average_entry_price == 101.0
        assert len(state.positions) == 1
        assert state.total_margin_used == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_entry_within_tolerance_kept(self, gateway, states, sync):
        gateway.set_position("SOL", 5.0, 100.2)
        states["SOL"] = local_state()

        result = await sync.reconcile("SOL")

        assert result.action == SyncAction.NONE
        assert states["SOL"].average_entry_price == 100.0

    @pytest.mark.asyncio
    async def test_direction_mismatch_strict_raises(self, gateway, states, sync):
        """Before an exit a flipped position is an inconsistency."""
        gateway.set_position("SOL", -5.0, 100.0)
        states["SOL"] = local_state()

        with pytest.raises(StateInconsistency) as exc_info:
            await sync.reconcile("SOL", strict=True)

        assert exc_info.value.symbol == "SOL"
        assert "SOL" not in states

    @pytest.mark.asyncio
    async def test_direction_mismatch_reseeds(self, gateway, states, sync):
        gateway.set_position("SOL", -5.0, 100.0)
        states["SOL"] = local_state()

        result = await sync.reconcile("SOL")

        assert result.action == SyncAction.SEED_STATE
        assert states["SOL"].direction == Direction.SHORT
        assert states["SOL"].current_level == 1


class TestReconcileAll:
    """Test bulk reconciliation and bookkeeping."""

    @pytest.mark.asyncio
    async def test_covers_live_and_local(self, gateway, states, sync):
        gateway.set_position("ETH", 1.0, 3000.0)
        states["SOL"] = local_state()

        results = {r.symbol: r for r in await sync.reconcile_all()}

        assert results["ETH"].action == SyncAction.SEED_STATE
        assert results["SOL"].action == SyncAction.RESET_STATE
        assert set(states) == {"ETH"}

    @pytest.mark.asyncio
    async def test_discrepancy_callback(self, gateway, states, sync):
        """Callback fires on discrepancies only; its errors are swallowed."""
        seen = []

        def callback(result):
            seen.append(result.symbol)
            raise RuntimeError("listener bug")

        sync.set_discrepancy_callback(callback)
        gateway.set_position("SOL", 5.0, 100.0)
        states["SOL"] = local_state()
        await sync.reconcile("SOL")
        gateway.set_position("ETH", 1.0, 3000.0)
        await sync.reconcile("ETH")

        assert seen == ["ETH"]
        assert sync.get_mismatch_count() == 1
        assert len(sync.get_results()) == 2
