"""
Position Synchronizer.

Keeps local pyramid state consistent with the exchange.

Exchange is ALWAYS the source of truth.

Reconciliation handles:
1. Closed on exchange (reset local state)
2. Unknown live position (seed as a single level-1 entry)
3. Size drift (scale local entries to the live size)
4. Entry drift beyond tolerance (consolidate to the live entry price)

The synchronizer mutates the state map it is given but takes no locks; the
owning engine serializes calls per symbol.
"""

import time
import logging
from typing import Callable, Dict, List, Optional

from ..config import PyramidConfig
from ..errors import StateInconsistency
from ..exchange.gateway import ExchangeGateway
from ..exchange.types import ExchangePosition
from .types import Direction, PositionEntry, PyramidState, SyncAction, SyncResult

MAX_VALID_ENTRY_PRICE = 1_000_000.0
_SIZE_EPSILON = 1e-9


class PositionSynchronizer:
    """
    Reconciles PyramidState against exchange positions.

    On discrepancy:
    - Live position gone -> reset local state
    - Live position unknown locally -> seed level 1 from exchange
    - Size mismatch -> update local to match exchange
    - Direction mismatch -> drop local state; exchange wins
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        config: PyramidConfig,
        states: Dict[str, PyramidState],
        clock: Callable[[], float] = time.time,
        logger: logging.Logger = None
    ):
        self._gateway = gateway
        self._config = config
        self._states = states
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

        self._results: List[SyncResult] = []
        self._on_discrepancy: Optional[Callable[[SyncResult], None]] = None

    async def reconcile(
        self,
        symbol: str,
        live: Optional[ExchangePosition] = None,
        strict: bool = False
    ) -> SyncResult:
        """
        Reconcile one symbol against the exchange.

        Args:
            symbol: Symbol to reconcile
            live: Pre-fetched live position; fetched fresh when omitted
            strict: Raise StateInconsistency when the live direction
                contradicts local state (used before exits)

        Returns:
            SyncResult describing the action taken
        """
        if live is None:
            live = await self._gateway.get_position(symbol)
        asset = await self._gateway.get_asset_info(symbol)

        state = self._states.get(symbol)
        now = self._clock()
        local_active = state is not None and state.is_active
        local_size = state.current_size if local_active else 0.0

        if live is None or asset.is_dust(live.size):
            live_size = live.size if live is not None else 0.0
            if local_active:
                result = self._handle_closed_on_exchange(symbol, state, live_size, now)
            else:
                # Inactive leftovers are dropped without ceremony
                self._states.pop(symbol, None)
                result = SyncResult(symbol, SyncAction.NONE, 0.0, live_size, timestamp=now)

        elif not local_active:
            result = self._handle_unknown_position(symbol, live, now)

        elif Direction.from_size(live.size) != state.direction:
            message = (
                f"direction mismatch: local {state.direction.value} {state.current_size}, "
                f"exchange {live.size}"
            )
            self._logger.error(f"STATE INCONSISTENCY: {symbol} {message}")
            if strict:
                self._states.pop(symbol, None)
                self._record(SyncResult(
                    symbol, SyncAction.RESET_STATE, local_size, live.size,
                    live.entry_price, message, now
                ))
                raise StateInconsistency(symbol, message)
            self._states.pop(symbol, None)
            result = self._handle_unknown_position(symbol, live, now)

        else:
            result = self._handle_live_position(symbol, state, live, now)

        self._record(result)
        return result

    async def reconcile_all(self) -> List[SyncResult]:
        """Reconcile every locally active symbol and every live position.

        Unlocked; the engine's reconcile_active is the locked equivalent.
        """
        positions = await self._gateway.get_positions()
        live_by_symbol = {p.symbol: p for p in positions}
        symbols = set(live_by_symbol) | {
            s for s, st in self._states.items() if st.is_active
        }
        results = []
        for symbol in sorted(symbols):
            results.append(await self.reconcile(symbol, live=live_by_symbol.get(symbol)))
        return results

    def _handle_closed_on_exchange(
        self,
        symbol: str,
        state: PyramidState,
        live_size: float,
        now: float
    ) -> SyncResult:
        """Position closed outside the engine (stop, manual, liquidation)."""
        self._logger.warning(
            f"POSITION CLOSED ON EXCHANGE: {symbol} local={state.current_size} "
            f"level={state.current_level} - resetting local state"
        )
        local_size = state.current_size
        self._states.pop(symbol, None)
        return SyncResult(
            symbol=symbol,
            action=SyncAction.RESET_STATE,
            local_size=local_size,
            live_size=live_size,
            message="Position closed externally - resetting local state",
            timestamp=now,
        )

    def _handle_unknown_position(
        self,
        symbol: str,
        live: ExchangePosition,
        now: float
    ) -> SyncResult:
        """Seed local state from a live position we don't track."""
        if not 0 < live.entry_price <= MAX_VALID_ENTRY_PRICE:
            self._logger.warning(
                f"Skipping seed for {symbol}: invalid entry price {live.entry_price}"
            )
            return SyncResult(
                symbol, SyncAction.NONE, 0.0, live.size, live.entry_price,
                "Invalid live entry price - not seeded", now
            )

        size = live.abs_size
        state = PyramidState(symbol=symbol, direction=Direction.from_size(live.size))
        state.add_entry(PositionEntry(
            size=size,
            entry_price=live.entry_price,
            margin_used=size * live.entry_price / self._config.fixed_leverage,
            timestamp=now,
        ))
        state.last_synced_size = size
        state.last_sync_time = now
        self._states[symbol] = state

        self._logger.warning(
            f"SEEDED FROM EXCHANGE: {symbol} size={live.size} entry={live.entry_price} as level 1"
        )
        return SyncResult(
            symbol, SyncAction.SEED_STATE, 0.0, live.size, live.entry_price,
            "Unknown live position - seeded as level 1", now
        )

    def _handle_live_position(
        self,
        symbol: str,
        state: PyramidState,
        live: ExchangePosition,
        now: float
    ) -> SyncResult:
        """Both sides hold a position; exchange size and entry win."""
        live_size = live.abs_size
        local_size = state.current_size
        action = SyncAction.NONE
        message = "In sync"

        if abs(live_size - local_size) > _SIZE_EPSILON:
            self._logger.warning(
                f"SIZE MISMATCH: {symbol} local={local_size} exchange={live_size}"
            )
            state.scale_to(live_size)
            action = SyncAction.SYNC_SIZE
            message = "Size mismatch - synced to exchange"

        if live.entry_price > 0 and self._entry_drifted(state.average_entry_price, live.entry_price):
            self._logger.warning(
                f"ENTRY MISMATCH: {symbol} local={state.average_entry_price:.6f} "
                f"exchange={live.entry_price:.6f}"
            )
            state.consolidate(live_size, live.entry_price, now)
            action = SyncAction.SYNC_ENTRY
            message = "Average entry drifted - consolidated to exchange entry"

        state.last_synced_size = live_size
        state.last_sync_time = now

        return SyncResult(
            symbol, action, local_size, live.size, live.entry_price, message, now
        )

    def _entry_drifted(self, local_entry: float, live_entry: float) -> bool:
        if local_entry <= 0:
            return True
        drift_pct = abs(local_entry - live_entry) / live_entry * 100
        return drift_pct > self._config.entry_price_tolerance_pct

    def _record(self, result: SyncResult):
        self._results.append(result)
        # Keep last 100 results
        if len(self._results) > 100:
            self._results = self._results[-100:]

        if result.action != SyncAction.NONE and self._on_discrepancy:
            try:
                self._on_discrepancy(result)
            except Exception as e:
                self._logger.error(f"Discrepancy callback failed: {e}")

    def get_results(self, limit: int = 50) -> List[SyncResult]:
        """Get recent reconciliation results."""
        return list(self._results[-limit:])

    def get_mismatch_count(self) -> int:
        """Get count of discrepancies detected."""
        return sum(1 for r in self._results if r.action != SyncAction.NONE)

    def set_discrepancy_callback(self, callback: Callable[[SyncResult], None]):
        """Set callback for discrepancy detection."""
        self._on_discrepancy = callback
