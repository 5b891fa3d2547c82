"""Risk Monitor.

Periodic protective checks against live exchange positions.

Checks:
- Per-position stop loss: pnl% <= -stop_loss_percentage -> full close
- Optional trailing stop: retrace from peak beyond trailing % -> full close
- Account deleverage: notional / account value > multiple -> reduce every position
- Margin health: WARNING / CRITICAL / EMERGENCY -> alert listeners

All closes go through the engine, which serializes them with signal
processing. Exits are never blocked by the exchange circuit breaker.
"""

import asyncio
import time
import logging
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from ..config import PyramidConfig
from ..engine.pyramid_engine import PyramidEngine
from ..errors import ExchangeError
from ..exchange.gateway import ExchangeGateway
from ..exchange.types import ExchangePosition
from ..sizing.leverage_manager import LeverageManager
from ..sizing.margin_calculator import MarginCalculator, MarginHealthLevel
from ..sizing.volatility import VolatilityEstimator
from .types import MarginAlert, RiskAction, RiskEvent, RiskReport, RiskSettings

_PNL_EPSILON = 1e-9

PositionMark = Tuple[ExchangePosition, float]


class RiskMonitor:
    """Monitors live positions and unwinds the unsafe ones.

    Usage:
        monitor = RiskMonitor(engine, gateway)
        report = await monitor.run_once()
        # or
        await monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        engine: PyramidEngine,
        gateway: ExchangeGateway,
        config: PyramidConfig = None,
        settings: RiskSettings = None,
        margin_calculator: MarginCalculator = None,
        volatility: VolatilityEstimator = None,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger = None
    ):
        self._engine = engine
        self._gateway = gateway
        self._config = config or engine.config
        self._settings = settings or RiskSettings()
        self._settings.validate()
        self._calculator = margin_calculator or MarginCalculator()
        self._volatility = volatility or engine.volatility
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

        self._peaks: Dict[str, float] = {}
        self._last_deleverage: Optional[float] = None
        self._events: Deque[RiskEvent] = deque(maxlen=self._settings.max_events)
        self._alert_listeners: List[Callable[[MarginAlert], None]] = []

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._checks_completed = 0

    @property
    def settings(self) -> RiskSettings:
        return self._settings

    def add_alert_listener(self, callback: Callable[[MarginAlert], None]):
        self._alert_listeners.append(callback)

    def get_events(self) -> List[RiskEvent]:
        return list(self._events)

    # =========================================================================
    # Checks
    # =========================================================================

    async def _position_marks(self) -> List[PositionMark]:
        """Live positions with their current mark price.

        A symbol whose price cannot be fetched is skipped for this pass.
        """
        marks = []
        for position in await self._gateway.get_positions():
            if position.size == 0 or position.entry_price <= 0:
                continue
            try:
                mark = await self._gateway.get_market_price(position.symbol)
            except ExchangeError as e:
                self._logger.error(f"Risk check skipped for {position.symbol}: {e}")
                continue
            if mark <= 0:
                continue
            self._volatility.record(position.symbol, mark)
            marks.append((position, mark))
        return marks

    @staticmethod
    def pnl_pct(position: ExchangePosition, mark: float) -> float:
        """Unrealized price move in percent, positive when in profit."""
        move = (mark - position.entry_price) / position.entry_price * 100
        return move if position.is_long else -move

    async def check_stop_losses(self, marks: List[PositionMark] = None) -> List[str]:
        """Close every position at or beyond the stop-loss percentage.

        Returns:
            Symbols closed
        """
        if marks is None:
            marks = await self._position_marks()

        closed = []
        threshold = -self._config.stop_loss_percentage
        for position, mark in marks:
            pnl = self.pnl_pct(position, mark)
            if pnl > threshold + _PNL_EPSILON:
                continue

            self._logger.error(
                f"STOP LOSS TRIGGERED: {position.symbol} size={position.size} "
                f"entry={position.entry_price} mark={mark} pnl={pnl:.2f}%"
            )
            executed = await self._close(position.symbol, RiskAction.STOP_LOSS, mark, pnl)
            if executed:
                closed.append(position.symbol)
        return closed

    async def check_trailing_stops(self, marks: List[PositionMark] = None) -> List[str]:
        """Close profitable positions that retraced more than the trailing %.

        Peaks are tracked per symbol from the marks seen by this monitor.
        """
        if marks is None:
            marks = await self._position_marks()

        live = {position.symbol for position, _ in marks}
        for symbol in list(self._peaks):
            if symbol not in live:
                del self._peaks[symbol]

        closed = []
        for position, mark in marks:
            peak = self._peaks.get(position.symbol)
            if peak is None:
                peak = mark
            elif position.is_long:
                peak = max(peak, mark)
            else:
                peak = min(peak, mark)
            self._peaks[position.symbol] = peak

            pnl = self.pnl_pct(position, mark)
            if pnl <= 0:
                continue
            retrace = (peak - mark) / peak * 100 if position.is_long else (mark - peak) / peak * 100
            if retrace <= self._config.trailing_stop_percentage:
                continue

            self._logger.error(
                f"TRAILING STOP TRIGGERED: {position.symbol} peak={peak} mark={mark} "
                f"retrace={retrace:.2f}%"
            )
            if await self._close(position.symbol, RiskAction.TRAILING_STOP, mark, pnl):
                self._peaks.pop(position.symbol, None)
                closed.append(position.symbol)
        return closed

    async def check_account_exposure(self) -> Tuple[float, List[str]]:
        """Deleverage when aggregate notional exceeds the hard multiple.

        Returns:
            (exposure multiple, symbols reduced)
        """
        account_value = await self._gateway.get_account_value()
        if account_value <= 0:
            self._logger.error(f"Exposure check skipped: account value {account_value}")
            return 0.0, []

        positions = await self._gateway.get_positions()
        multiple = LeverageManager.current_account_leverage(positions, account_value)
        if multiple <= self._settings.deleverage_multiple:
            return multiple, []

        now = self._clock()
        if (
            self._last_deleverage is not None
            and now - self._last_deleverage < self._settings.deleverage_cooldown_seconds
        ):
            self._logger.warning(
                f"Exposure {multiple:.2f}x still above {self._settings.deleverage_multiple}x "
                f"(deleverage cooling down)"
            )
            return multiple, []

        self._logger.error(
            f"EMERGENCY DELEVERAGE: exposure {multiple:.2f}x > {self._settings.deleverage_multiple}x "
            f"- reducing {len(positions)} positions by {self._settings.deleverage_fraction * 100:.0f}%"
        )
        self._last_deleverage = now

        reduced = []
        for position in positions:
            try:
                executed = await self._engine.reduce_position(
                    position.symbol, self._settings.deleverage_fraction, reason="deleverage"
                )
            except ExchangeError as e:
                self._logger.error(f"Deleverage of {position.symbol} failed: {e}")
                executed = False
            self._events.append(RiskEvent(
                symbol=position.symbol,
                action=RiskAction.DELEVERAGE,
                reason=f"account exposure {multiple:.2f}x",
                executed=executed,
                timestamp=self._clock(),
            ))
            if executed:
                reduced.append(position.symbol)
        return multiple, reduced

    async def check_margin_health(self) -> Optional[MarginAlert]:
        """Classify account margin usage and notify alert listeners."""
        account_value = await self._gateway.get_account_value()
        positions = await self._gateway.get_positions()
        margin_used = LeverageManager.total_margin_used(positions, self._config.fixed_leverage)

        health = self._calculator.check_margin_health(account_value, margin_used)
        if health.level == MarginHealthLevel.HEALTHY:
            return None

        alert = MarginAlert(
            level=health.level,
            margin_ratio=health.margin_ratio,
            margin_used=margin_used,
            account_value=account_value,
            warnings=list(health.warnings),
            timestamp=self._clock(),
        )
        if health.requires_action:
            self._logger.error(f"MARGIN {health.level.name}: {', '.join(health.warnings)}")
        else:
            self._logger.warning(f"Margin {health.level.name}: {', '.join(health.warnings)}")

        for listener in list(self._alert_listeners):
            try:
                listener(alert)
            except Exception as e:
                self._logger.error(f"Margin alert listener failed: {e}")
        return alert

    async def _close(self, symbol: str, action: RiskAction, mark: float, pnl: float) -> bool:
        try:
            executed = await self._engine.force_close(symbol, reason=action.value)
        except ExchangeError as e:
            self._logger.error(f"{action.value} close of {symbol} failed: {e}")
            executed = False
        self._events.append(RiskEvent(
            symbol=symbol,
            action=action,
            reason=f"pnl {pnl:.2f}% at mark {mark}",
            executed=executed,
            mark_price=mark,
            pnl_pct=pnl,
            timestamp=self._clock(),
        ))
        return executed

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def run_once(self) -> RiskReport:
        """Run every check once. An exchange failure in one check does not stop the others."""
        report = RiskReport()

        try:
            marks = await self._position_marks()
            report.stop_losses = await self.check_stop_losses(marks)
            if self._settings.trailing_stop_enabled:
                remaining = [(p, m) for p, m in marks if p.symbol not in report.stop_losses]
                report.trailing_stops = await self.check_trailing_stops(remaining)
        except ExchangeError as e:
            self._logger.error(f"Stop-loss check failed: {e}")
            report.errors.append(str(e))

        try:
            report.exposure_multiple, report.deleveraged = await self.check_account_exposure()
        except ExchangeError as e:
            self._logger.error(f"Exposure check failed: {e}")
            report.errors.append(str(e))

        try:
            report.margin_alert = await self.check_margin_health()
        except ExchangeError as e:
            self._logger.error(f"Margin health check failed: {e}")
            report.errors.append(str(e))

        self._checks_completed += 1
        return report

    async def _monitor_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self._settings.check_interval_seconds)
                report = await self.run_once()
                if report.actions_taken:
                    self._logger.info(
                        f"Risk pass: {len(report.stop_losses)} stop losses, "
                        f"{len(report.trailing_stops)} trailing stops, "
                        f"{len(report.deleveraged)} deleveraged"
                    )
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error(f"Risk monitor loop error: {e}")

    async def start(self):
        """Start the monitor loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        self._logger.info(
            f"Risk monitor started (every {self._settings.check_interval_seconds}s, "
            f"stop loss {self._config.stop_loss_percentage}%)"
        )

    async def stop(self):
        """Stop the monitor loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._logger.info("Risk monitor stopped")

    def get_status(self) -> Dict:
        return {
            'running': self._running,
            'checks_completed': self._checks_completed,
            'last_deleverage': self._last_deleverage,
            'events': len(self._events),
            'tracked_peaks': dict(self._peaks),
        }
