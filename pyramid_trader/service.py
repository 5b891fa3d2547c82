"""
Pyramid Service

Runs the engine as a long-lived process.

Responsibility:
1. Ingest: per-symbol signal queues, one worker task per symbol
2. Startup: restore persisted pyramid state, then reconcile with the exchange
3. Sync: periodic reconcile_active() against the exchange
4. Risk: RiskMonitor loop (stop loss, deleverage, margin alerts)
5. Health: periodic health log

Signals for one symbol are applied in arrival order; different symbols run
concurrently.
"""

import asyncio
import time
import logging
from typing import Dict, List, Optional, Tuple

from .config import ServiceSettings
from .engine.pyramid_engine import PyramidEngine
from .engine.types import AccountContext, SignalResult, TradingSignal
from .errors import ExchangeError
from .exchange.gateway import ExchangeGateway
from .persistence.sqlite_store import SQLiteTradeStore
from .risk.monitor import RiskMonitor

QueueItem = Tuple[TradingSignal, AccountContext, asyncio.Future]


class PyramidService:
    """
    Process wrapper around PyramidEngine.

    Usage:
        service = PyramidService(engine, gateway, risk_monitor=monitor, store=store)
        await service.start()
        result = await service.process(signal)
        ...
        await service.stop()
    """

    def __init__(
        self,
        engine: PyramidEngine,
        gateway: ExchangeGateway,
        risk_monitor: RiskMonitor = None,
        store: SQLiteTradeStore = None,
        settings: ServiceSettings = None,
        logger: logging.Logger = None
    ):
        self._engine = engine
        self._gateway = gateway
        self._risk_monitor = risk_monitor
        self._store = store
        self._settings = settings or ServiceSettings()
        self._logger = logger or logging.getLogger(__name__)

        self._running = False
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._tasks: List[asyncio.Task] = []

        self._start_time: Optional[float] = None
        self._signals_submitted = 0
        self._sync_passes = 0

    @property
    def engine(self) -> PyramidEngine:
        return self._engine

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Restore state, reconcile, and start background loops."""
        if self._running:
            return
        self._running = True
        self._start_time = time.time()

        restored = {}
        if self._store is not None:
            restored = self._store.load_positions()
            if restored:
                self._logger.info(f"Restored {len(restored)} persisted pyramid states")

        try:
            await self._engine.load_existing_positions(restored)
        except ExchangeError as e:
            # The sync loop retries; buys stay gated by the breaker meanwhile
            self._logger.error(f"Startup reconciliation failed: {e}")

        if self._risk_monitor is not None:
            await self._risk_monitor.start()

        self._tasks = [
            asyncio.create_task(self._sync_loop()),
            asyncio.create_task(self._health_log_loop()),
        ]
        self._logger.info(
            f"Pyramid service started (sync every {self._settings.sync_interval_seconds}s, "
            f"active: {self._engine.active_symbols()})"
        )

    async def stop(self):
        """Stop workers and loops, then release the gateway and store."""
        self._running = False

        if self._risk_monitor is not None:
            await self._risk_monitor.stop()

        for task in self._tasks + list(self._workers.values()):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self._workers.clear()

        # Anything still queued never ran
        for queue in self._queues.values():
            while not queue.empty():
                _, _, future = queue.get_nowait()
                if not future.done():
                    future.cancel()
        self._queues.clear()

        await self._gateway.close()
        if self._store is not None:
            self._store.close()
        self._logger.info("Pyramid service stopped")

    # =========================================================================
    # Ingestion
    # =========================================================================

    def submit(self, signal: TradingSignal, account_context: AccountContext = None) -> asyncio.Future:
        """Queue a signal for its symbol's worker.

        Returns:
            Future resolved with the SignalResult (or the ExchangeError)
        """
        if not self._running:
            raise RuntimeError("PyramidService is not running")

        future = asyncio.get_running_loop().create_future()
        queue = self._queues.get(signal.symbol)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[signal.symbol] = queue
            self._workers[signal.symbol] = asyncio.create_task(self._symbol_worker(signal.symbol, queue))

        queue.put_nowait((signal, account_context or AccountContext(), future))
        self._signals_submitted += 1
        return future

    async def process(self, signal: TradingSignal, account_context: AccountContext = None) -> SignalResult:
        """Submit a signal and wait for its result."""
        return await self.submit(signal, account_context)

    async def _symbol_worker(self, symbol: str, queue: asyncio.Queue):
        while self._running:
            try:
                signal, context, future = await queue.get()
            except asyncio.CancelledError:
                break

            try:
                result = await self._engine.process_signal(signal, context)
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                break
            except Exception as e:
                if not isinstance(e, ExchangeError):
                    self._logger.error(f"Worker {symbol} failed on {signal.action.value}: {e}")
                if not future.done():
                    future.set_exception(e)
            finally:
                queue.task_done()

    # =========================================================================
    # Background loops
    # =========================================================================

    async def _sync_loop(self):
        """Periodic reconciliation of every active symbol."""
        while self._running:
            try:
                await asyncio.sleep(self._settings.sync_interval_seconds)
                await self._engine.reconcile_active()
                self._sync_passes += 1
            except asyncio.CancelledError:
                break
            except ExchangeError as e:
                self._logger.error(f"Sync pass failed: {e}")
            except Exception as e:
                self._logger.error(f"Sync loop error: {e}")

    async def _health_log_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self._settings.health_interval_seconds)
                status = self.get_status()
                engine = status['engine']
                self._logger.info(
                    f"Health: breaker={engine['breaker']['state']} "
                    f"active={list(engine['states'])} "
                    f"margin=${engine['total_margin_used']:.2f} "
                    f"signals={engine['signals_processed']} "
                    f"errors={len(engine['recent_errors'])}"
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error(f"Health log error: {e}")

    def get_status(self) -> Dict:
        return {
            'running': self._running,
            'uptime_seconds': time.time() - self._start_time if self._start_time else 0.0,
            'signals_submitted': self._signals_submitted,
            'sync_passes': self._sync_passes,
            'queued': {symbol: q.qsize() for symbol, q in self._queues.items()},
            'engine': self._engine.get_health_status(),
            'risk': self._risk_monitor.get_status() if self._risk_monitor else None,
            'store': self._store.get_stats() if self._store else None,
        }
