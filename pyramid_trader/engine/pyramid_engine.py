"""
Pyramid Engine.

Turns buy/sell signals into margin-sized orders and owns the per-symbol
pyramid state map.

State machine per symbol:
    FLAT --buy ok--> LEVEL_1 --buy ok--> ... --> LEVEL_max
    LEVEL_k --sell (partial)--> LEVEL_k (exit_count + 1)
    LEVEL_k --sell (remainder) / forced close--> FLAT

Rules:
- State is mutated only after the exchange confirms an order
- Every exit is sized from a fresh exchange read, never from cached state
- One asyncio.Lock per symbol serializes signals, reconciles and closes
- Exits are never blocked by the exchange circuit breaker; entries are
"""

import asyncio
import time
import logging
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from ..config import LeverageMode, PyramidConfig
from ..errors import (
    EntriesSuspended,
    ExchangeError,
    ExposureExceeded,
    StateInconsistency,
    ValidationError,
)
from ..exchange.circuit_breaker import CircuitBreakerState, ExchangeCircuitBreaker
from ..exchange.gateway import ExchangeGateway, GuardedGateway
from ..exchange.types import AssetInfo, OrderRequest, OrderResult, OrderType
from ..persistence.sink import NullSink, PersistenceSink, SignalRecord, TradeRecord
from ..position.synchronizer import PositionSynchronizer
from ..position.types import (
    Direction,
    PositionEntry,
    PositionUpdate,
    PyramidState,
    SyncAction,
    SyncResult,
)
from ..sizing.leverage_manager import LeverageConfig, LeverageManager
from ..sizing.margin_calculator import MarginCalculator, MarginRejection, MarginRequirements
from ..sizing.volatility import VolatilityEstimator
from .types import AccountContext, SignalAction, SignalResult, TradingSignal

MAX_RECENT_ERRORS = 10


class PyramidEngine:
    """
    Single owner of all PyramidState.

    Monitoring and sync tasks call the public coroutines below; nothing
    outside the engine touches the state map directly.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        config: PyramidConfig = None,
        margin_calculator: MarginCalculator = None,
        leverage_manager: LeverageManager = None,
        breaker: ExchangeCircuitBreaker = None,
        persistence: PersistenceSink = None,
        volatility: VolatilityEstimator = None,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger = None
    ):
        self._gateway = gateway
        self._config = config or PyramidConfig()
        self._calculator = margin_calculator or MarginCalculator()
        self._leverage_manager = leverage_manager or LeverageManager(LeverageConfig(
            base_leverage=self._config.fixed_leverage,
            max_leverage=max(10.0, self._config.fixed_leverage),
        ))
        if breaker is None:
            breaker = gateway.breaker if isinstance(gateway, GuardedGateway) else ExchangeCircuitBreaker()
        self._breaker = breaker
        self._persistence = persistence or NullSink()
        self._volatility = volatility or VolatilityEstimator()
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

        self._states: Dict[str, PyramidState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._synchronizer = PositionSynchronizer(
            gateway, self._config, self._states, clock=clock, logger=self._logger
        )

        self._listeners: List[Callable[[PositionUpdate], None]] = []
        self._recent_errors: Deque[Dict] = deque(maxlen=MAX_RECENT_ERRORS)
        self._last_signal_processed: Optional[float] = None
        self._signals_processed = 0

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def config(self) -> PyramidConfig:
        return self._config

    @property
    def breaker(self) -> ExchangeCircuitBreaker:
        return self._breaker

    @property
    def synchronizer(self) -> PositionSynchronizer:
        return self._synchronizer

    @property
    def volatility(self) -> VolatilityEstimator:
        return self._volatility

    def get_state(self, symbol: str) -> Optional[PyramidState]:
        """Copy of the symbol's state, or None when FLAT."""
        state = self._states.get(symbol)
        return state.copy() if state is not None else None

    def get_states(self) -> Dict[str, PyramidState]:
        return {symbol: state.copy() for symbol, state in self._states.items()}

    def active_symbols(self) -> List[str]:
        return sorted(s for s, st in self._states.items() if st.is_active)

    def total_margin_used(self) -> float:
        return sum(st.total_margin_used for st in self._states.values() if st.is_active)

    def add_update_listener(self, callback: Callable[[PositionUpdate], None]):
        """Register a PositionUpdate listener."""
        self._listeners.append(callback)

    def remove_update_listener(self, callback: Callable[[PositionUpdate], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _lock_for(self, symbol: str) -> asyncio.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[symbol] = lock
        return lock

    # =========================================================================
    # Signal entry points
    # =========================================================================

    async def process_signal(
        self,
        signal: TradingSignal,
        account_context: AccountContext = None
    ) -> SignalResult:
        """
        Process one signal under the symbol lock.

        ValidationError / ExposureExceeded / EntriesSuspended become a
        rejected SignalResult. ExchangeError is recorded and re-raised.
        """
        context = account_context or AccountContext()

        try:
            signal.validate()
        except ValidationError as e:
            self._logger.warning(f"Invalid signal dropped: {e}")
            self._persist_signal(signal, context, "rejected", str(e))
            return SignalResult.rejected(signal.action, signal.symbol, str(e))

        async with self._lock_for(signal.symbol):
            try:
                if signal.action == SignalAction.BUY:
                    result = await self._handle_buy(signal, context)
                else:
                    result = await self._handle_sell(signal, context)

            except (ValidationError, ExposureExceeded) as e:
                self._logger.warning(
                    f"Signal rejected: {signal.action.value} {signal.symbol} - {e}"
                )
                self._persist_signal(signal, context, "rejected", str(e))
                return SignalResult.rejected(signal.action, signal.symbol, str(e))

            except EntriesSuspended as e:
                self._logger.error(f"Buy refused: {signal.symbol} - {e}")
                self._record_error(signal.symbol, signal.action.value, e)
                self._persist_signal(signal, context, "rejected", str(e))
                return SignalResult.rejected(signal.action, signal.symbol, str(e))

            except StateInconsistency as e:
                self._logger.warning(f"Signal aborted on state inconsistency: {e}")
                self._record_error(signal.symbol, signal.action.value, e)
                self._persist_signal(signal, context, "failed", str(e))
                return SignalResult.rejected(signal.action, signal.symbol, str(e))

            except ExchangeError as e:
                self._logger.error(
                    f"Signal failed: {signal.action.value} {signal.symbol} - {e}"
                )
                self._record_error(signal.symbol, signal.action.value, e)
                self._persist_signal(signal, context, "failed", str(e))
                raise

            finally:
                self._last_signal_processed = self._clock()
                self._signals_processed += 1

        self._persist_signal(
            signal, context, "executed" if result.accepted else "ignored", result.reason
        )
        return result

    async def handle_buy(self, signal: TradingSignal, account_context: AccountContext = None) -> SignalResult:
        """Buy transition under the symbol lock. Errors propagate."""
        async with self._lock_for(signal.symbol):
            return await self._handle_buy(signal, account_context or AccountContext())

    async def handle_sell(self, signal: TradingSignal, account_context: AccountContext = None) -> SignalResult:
        """Sell transition under the symbol lock. Errors propagate."""
        async with self._lock_for(signal.symbol):
            return await self._handle_sell(signal, account_context or AccountContext())

    # =========================================================================
    # Buy
    # =========================================================================

    async def _handle_buy(self, signal: TradingSignal, context: AccountContext) -> SignalResult:
        symbol = signal.symbol
        state = self._states.get(symbol)
        active = state is not None and state.is_active
        level = state.current_level if active else 0

        if level >= self._config.max_pyramid_levels:
            self._logger.info(
                f"Buy ignored: {symbol} already at max pyramid level {level}"
            )
            return SignalResult.rejected(SignalAction.BUY, symbol, "max pyramid level reached")

        if active and state.direction != Direction.LONG:
            raise ValidationError(f"{symbol} holds a {state.direction.value} position; buy would not pyramid")

        self._check_entry_cooldown(state if active else None)

        if not self._breaker.allows_entries():
            raise EntriesSuspended(
                f"exchange breaker {self._breaker.state.name}: {self._breaker.last_error}"
            )

        account_value = await self._gateway.get_account_value()
        if account_value <= 0:
            raise ValidationError(f"Invalid account value: {account_value}")

        price = await self._gateway.get_market_price(symbol)
        if price <= 0:
            raise ValidationError(f"Invalid market price for {symbol}: {price}")
        self._volatility.record(symbol, price)

        asset = await self._gateway.get_asset_info(symbol)
        self._check_entry_price(state if active else None, price)

        leverage = self._entry_leverage(symbol, level, account_value)
        requirements = self._calculator.calculate_margin_requirements(
            account_value=account_value,
            price=price,
            margin_pct=self._config.margin_percentage_for_level(level),
            leverage=leverage,
            existing_margin_used=state.total_margin_used if active else 0.0,
            max_exposure=self._config.max_account_exposure,
            lot_size=asset.lot_size,
            min_account_value=self._config.min_account_value,
        )
        if not requirements.is_valid:
            self._raise_for_rejection(symbol, requirements)
        for warning in requirements.warnings:
            self._logger.warning(f"{symbol} level {level + 1}: {warning}")

        limit_price = asset.round_price(price * (1 + self._config.slippage_tolerance))
        request = OrderRequest(
            symbol=symbol,
            is_buy=True,
            size=requirements.position_size,
            order_type=OrderType.LIMIT,
            limit_price=limit_price,
            reduce_only=False,
        )
        result = await self._gateway.place_order(request)
        if not result.ok:
            raise ExchangeError(f"Buy order rejected for {symbol}: {result.error}", operation="place_order")
        if not result.is_filled:
            raise ExchangeError(f"Buy order for {symbol} reported no fill", operation="place_order")

        # Confirmed fill: commit what was filled
        filled = min(result.filled_size, requirements.position_size)
        margin_used = requirements.required_margin * filled / requirements.position_size
        entry_price = result.average_price or price
        now = self._clock()
        if not active:
            state = PyramidState(symbol=symbol, direction=Direction.LONG)
        state.add_entry(PositionEntry(
            size=filled,
            entry_price=entry_price,
            margin_used=margin_used,
            timestamp=now,
        ))
        self._states[symbol] = state

        if filled < requirements.position_size:
            self._logger.warning(
                f"{symbol}: partial fill {filled} of {requirements.position_size}"
            )
        self._logger.info(
            f"PYRAMID BUY: {symbol} level {state.current_level}/{self._config.max_pyramid_levels} "
            f"size={filled} @ {entry_price} leverage={leverage}x "
            f"margin=${margin_used:.2f} total=${state.total_margin_used:.2f} "
            f"avg={state.average_entry_price:.4f}"
        )

        update = self._emit(state, "buy")
        self._persist_trade(state, request, result, price, "pyramid_entry", context)
        self._persist(self._persistence.record_position, state)

        return SignalResult(
            accepted=True,
            action=SignalAction.BUY,
            symbol=symbol,
            reason=f"level {state.current_level}",
            order_size=filled,
            order_price=limit_price,
            update=update,
        )

    def _check_entry_cooldown(self, state: Optional[PyramidState]):
        cooldown = self._config.entry_policy.cooldown_seconds
        if cooldown <= 0 or state is None or state.last_entry_time is None:
            return
        elapsed = self._clock() - state.last_entry_time
        if elapsed < cooldown:
            raise ValidationError(
                f"entry cooldown active for {state.symbol}: {cooldown - elapsed:.1f}s remaining"
            )

    def _check_entry_price(self, state: Optional[PyramidState], price: float):
        move_pct = self._config.entry_policy.min_favorable_move_pct
        if move_pct <= 0 or state is None or state.last_entry_price is None:
            return
        required = state.last_entry_price * (1 + move_pct / 100)
        if price < required:
            raise ValidationError(
                f"price {price} has not moved {move_pct}% above last entry "
                f"{state.last_entry_price} (needs {required:.4f})"
            )

    def _entry_leverage(self, symbol: str, level: int, account_value: float) -> float:
        """Leverage for the next entry, capped by account-health tiers."""
        margin_ratio = self.total_margin_used() / account_value
        tiers = self._leverage_manager.leverage_tiers(margin_ratio)

        if self._config.leverage_mode == LeverageMode.ADAPTIVE:
            decision = self._leverage_manager.recommend_leverage(
                self._config.fixed_leverage,
                level,
                margin_ratio,
                self._volatility.estimate(symbol),
            )
            leverage = decision.leverage
            cap = tiers.cap_for(level)
        else:
            leverage = self._config.fixed_leverage
            cap = tiers.maximum

        if not tiers.allows_entries or cap <= 0:
            raise ExposureExceeded(
                f"account margin ratio {margin_ratio * 100:.1f}% forbids new entries"
            )
        if leverage > cap:
            self._logger.info(
                f"{symbol}: leverage {leverage}x capped to {cap}x at margin ratio {margin_ratio:.2f}"
            )
            leverage = cap
        return leverage

    def _raise_for_rejection(self, symbol: str, requirements: MarginRequirements):
        reason = "; ".join(requirements.warnings)
        if requirements.rejection in (MarginRejection.EXPOSURE, MarginRejection.INSUFFICIENT_MARGIN):
            raise ExposureExceeded(
                f"{symbol}: {reason}",
                required_margin=requirements.required_margin,
                allowed_margin=requirements.available_margin,
            )
        raise ValidationError(f"{symbol}: {reason}")

    # =========================================================================
    # Sell
    # =========================================================================

    async def _sync_before_exit(self, symbol: str) -> SyncResult:
        """Exit precondition: reconcile against a fresh exchange read."""
        try:
            result = await self._synchronizer.reconcile(symbol, strict=True)
        except StateInconsistency:
            # Local state was dropped; tell listeners and the store
            self._after_sync(SyncResult(symbol, SyncAction.RESET_STATE, 0.0, 0.0, timestamp=self._clock()))
            raise
        self._after_sync(result)
        return result

    async def _handle_sell(self, signal: TradingSignal, context: AccountContext) -> SignalResult:
        symbol = signal.symbol
        sync = await self._sync_before_exit(symbol)

        state = self._states.get(symbol)
        if state is None or not state.is_active:
            self._logger.info(f"Sell ignored: no live position for {symbol}")
            return SignalResult.rejected(
                SignalAction.SELL, symbol, "no live position", sync_result=sync
            )

        live_size = abs(sync.live_size)
        asset = await self._gateway.get_asset_info(symbol)
        fraction = self._config.first_exit_fraction if state.exit_count == 0 else 1.0
        exit_size = self._exit_size(asset, live_size, fraction)

        request, result = await self._submit_reduce(symbol, state.direction, exit_size)

        state.exit_count += 1
        remaining = live_size - exit_size
        reason = "exit_full" if fraction >= 1.0 or exit_size >= live_size else "exit_partial"

        self._logger.info(
            f"PYRAMID SELL: {symbol} exit #{state.exit_count} closed {exit_size} of {live_size} "
            f"(remaining {remaining:.6f})"
        )

        self._persist_trade(state, request, result, result.average_price or 0.0, reason, context)
        update = self._apply_reduction(state, asset, remaining, reason)

        return SignalResult(
            accepted=True,
            action=SignalAction.SELL,
            symbol=symbol,
            reason=reason,
            order_size=exit_size,
            sync_result=sync,
            update=update,
        )

    @staticmethod
    def _exit_size(asset: AssetInfo, live_size: float, fraction: float) -> float:
        """Exit size from the live size; partial exits below one lot close everything."""
        if fraction >= 1.0:
            return live_size
        size = asset.round_size_down(live_size * fraction)
        if size < asset.lot_size:
            return live_size
        return size

    async def _submit_reduce(self, symbol: str, direction: Direction, size: float):
        request = OrderRequest(
            symbol=symbol,
            is_buy=direction == Direction.SHORT,
            size=size,
            order_type=OrderType.MARKET,
            reduce_only=True,
        )
        result = await self._gateway.place_order(request)
        if not result.ok:
            raise ExchangeError(
                f"Reduce-only order rejected for {symbol}: {result.error}", operation="place_order"
            )
        return request, result

    def _apply_reduction(
        self,
        state: PyramidState,
        asset: AssetInfo,
        remaining: float,
        reason: str
    ) -> PositionUpdate:
        if asset.is_dust(remaining):
            return self._reset(state.symbol, reason)

        remaining = round(remaining, asset.sz_decimals)
        state.scale_to(remaining)
        state.last_synced_size = remaining
        state.last_sync_time = self._clock()
        update = self._emit(state, reason)
        self._persist(self._persistence.record_position, state)
        return update

    # =========================================================================
    # Risk-driven exits (ignore the breaker)
    # =========================================================================

    async def force_close(self, symbol: str, reason: str = "forced_close") -> bool:
        """
        Close the full live position with a reduce-only market order.

        Returns:
            True if an order was placed and confirmed
        """
        async with self._lock_for(symbol):
            sync = await self._synchronizer.reconcile(symbol)
            self._after_sync(sync)

            asset = await self._gateway.get_asset_info(symbol)
            if sync.live_size == 0 or asset.is_dust(sync.live_size):
                return False

            state = self._states.get(symbol)
            direction = state.direction if state is not None else Direction.from_size(sync.live_size)
            live_size = abs(sync.live_size)

            request, result = await self._submit_reduce(symbol, direction, live_size)

            self._logger.error(
                f"FORCED CLOSE: {symbol} size={live_size} reason={reason}"
            )
            level = state.current_level if state is not None else 0
            self._persist(self._persistence.record_trade, TradeRecord(
                symbol=symbol,
                side=request.side,
                size=live_size,
                price=result.average_price or 0.0,
                order_type=request.order_type.value,
                reduce_only=True,
                reason=reason,
                pyramid_level=level,
                order_id=result.order_id,
            ))
            self._reset(symbol, reason)
            return True

    async def reduce_position(self, symbol: str, fraction: float, reason: str = "deleverage") -> bool:
        """
        Reduce the live position by `fraction` with a reduce-only market order.

        The size is floored to the lot; below one lot nothing is sent.

        exit_count is left alone; this is not a signal exit.
        """
        if not 0 < fraction <= 1:
            raise ValidationError(f"fraction must be in (0, 1]: {fraction}")

        async with self._lock_for(symbol):
            sync = await self._synchronizer.reconcile(symbol)
            self._after_sync(sync)

            state = self._states.get(symbol)
            asset = await self._gateway.get_asset_info(symbol)
            if state is None or not state.is_active or asset.is_dust(sync.live_size):
                return False

            live_size = abs(sync.live_size)
            size = live_size if fraction >= 1.0 else asset.round_size_down(live_size * fraction)
            if size < asset.lot_size:
                self._logger.warning(
                    f"Reduce skipped: {symbol} {fraction:.0%} of {live_size} is below one lot "
                    f"({asset.lot_size})"
                )
                return False
            request, result = await self._submit_reduce(symbol, state.direction, size)

            self._logger.warning(
                f"POSITION REDUCED: {symbol} closed {size} of {live_size} reason={reason}"
            )
            self._persist(self._persistence.record_trade, TradeRecord(
                symbol=symbol,
                side=request.side,
                size=size,
                price=result.average_price or 0.0,
                order_type=request.order_type.value,
                reduce_only=True,
                reason=reason,
                pyramid_level=state.current_level,
                order_id=result.order_id,
            ))
            self._apply_reduction(state, asset, live_size - size, reason)
            return True

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self, symbol: str) -> SyncResult:
        """Locked reconciliation of one symbol."""
        async with self._lock_for(symbol):
            result = await self._synchronizer.reconcile(symbol)
            self._after_sync(result)
            return result

    async def reconcile_active(self) -> List[SyncResult]:
        """Reconcile every active symbol and every live exchange position."""
        positions = await self._gateway.get_positions()
        symbols = {p.symbol for p in positions} | set(self.active_symbols())

        results = []
        for symbol in sorted(symbols):
            try:
                results.append(await self.reconcile(symbol))
            except ExchangeError as e:
                self._logger.error(f"Reconcile failed for {symbol}: {e}")
                self._record_error(symbol, "reconcile", e)
        return results

    async def load_existing_positions(self, restored: Dict[str, PyramidState] = None) -> List[SyncResult]:
        """
        Startup reconstruction.

        Restored states (e.g. from persistence) are installed first so a
        consistent history survives restarts; every live position and every
        restored symbol is then reconciled. Live positions unknown locally
        are seeded as level 1.
        """
        for symbol, state in (restored or {}).items():
            if state.is_active:
                self._states[symbol] = state.copy()

        positions = await self._gateway.get_positions()
        symbols = {p.symbol for p in positions} | set(self._states)

        results = []
        for symbol in sorted(symbols):
            results.append(await self.reconcile(symbol))

        self._logger.info(
            f"Loaded {len(self.active_symbols())} existing positions: {self.active_symbols()}"
        )
        return results

    def _after_sync(self, result: SyncResult):
        """Notify and persist whatever the synchronizer changed."""
        if result.action == SyncAction.NONE:
            return
        state = self._states.get(result.symbol)
        if state is None:
            update = PositionUpdate(result.symbol, 0, 0, 0.0, 0.0, reason="sync_reset", timestamp=self._clock())
            self._notify(update)
            self._persist(self._persistence.delete_position, result.symbol)
        else:
            self._emit(state, f"sync_{result.action.name.lower()}")
            self._persist(self._persistence.record_position, state)

    # =========================================================================
    # Operator controls
    # =========================================================================

    async def reset_symbol(self, symbol: str) -> bool:
        """Drop local state for a symbol (exchange untouched)."""
        async with self._lock_for(symbol):
            if symbol not in self._states:
                return False
            self._reset(symbol, "operator_reset")
            self._logger.warning(f"Pyramid state for {symbol} reset by operator")
            return True

    async def reset_all(self) -> int:
        count = 0
        for symbol in list(self._states):
            if await self.reset_symbol(symbol):
                count += 1
        return count

    def get_health_status(self) -> Dict:
        return {
            'last_signal_processed': self._last_signal_processed,
            'signals_processed': self._signals_processed,
            'recent_errors': list(self._recent_errors),
            'entries_suspended': self._breaker.state != CircuitBreakerState.CLOSED,
            'breaker': self._breaker.get_status(),
            'total_margin_used': self.total_margin_used(),
            'states': {
                symbol: {
                    'phase': state.phase,
                    'level': state.current_level,
                    'exit_count': state.exit_count,
                    'size': state.current_size,
                    'average_entry': state.average_entry_price,
                    'margin_used': state.total_margin_used,
                    'last_sync_time': state.last_sync_time,
                }
                for symbol, state in self._states.items()
            },
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _reset(self, symbol: str, reason: str) -> PositionUpdate:
        state = self._states.pop(symbol, None)
        if state is None:
            state = PyramidState(symbol=symbol)
        state.reset()
        update = self._emit(state, reason)
        self._persist(self._persistence.delete_position, symbol)
        self._logger.info(f"{symbol} returned to FLAT ({reason})")
        return update

    def _emit(self, state: PyramidState, reason: str) -> PositionUpdate:
        update = PositionUpdate.from_state(state, reason, timestamp=self._clock())
        self._notify(update)
        return update

    def _notify(self, update: PositionUpdate):
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception as e:
                self._logger.error(f"Position update listener failed: {e}")

    def _record_error(self, symbol: str, action: str, error: Exception):
        self._recent_errors.append({
            'timestamp': self._clock(),
            'symbol': symbol,
            'action': action,
            'error': f"{type(error).__name__}: {error}",
        })

    def _persist(self, fn: Callable, *args):
        try:
            fn(*args)
        except Exception as e:
            self._logger.warning(f"Persistence failed ({getattr(fn, '__name__', fn)}): {e}")

    def _persist_signal(self, signal: TradingSignal, context: AccountContext, status: str, reason: str):
        self._persist(self._persistence.record_signal, SignalRecord(
            symbol=signal.symbol,
            action=signal.action.value if isinstance(signal.action, SignalAction) else str(signal.action),
            status=status,
            price=signal.price,
            strategy=signal.strategy,
            account_id=context.account_id,
            reason=reason,
            received_at=signal.timestamp,
        ))

    def _persist_trade(
        self,
        state: PyramidState,
        request: OrderRequest,
        result: OrderResult,
        price: float,
        reason: str,
        context: AccountContext
    ):
        self._persist(self._persistence.record_trade, TradeRecord(
            symbol=request.symbol,
            side=request.side,
            size=result.filled_size or request.size,
            price=result.average_price or price,
            order_type=request.order_type.value,
            reduce_only=request.reduce_only,
            reason=reason,
            pyramid_level=state.current_level,
            order_id=result.order_id,
            account_id=context.account_id,
            executed_at=self._clock(),
        ))
