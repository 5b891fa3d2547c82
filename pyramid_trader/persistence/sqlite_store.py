"""
SQLite Trade Store - buffered persistence for signals, trades and pyramid state.

Writes are queued and flushed in batches on a background thread so the
async event loop never waits on a SQLite commit.

Properties:
- Non-blocking: record_* calls return immediately
- Batched commits: one transaction per flush
- Thread-safe: lock around all SQLite access
- Graceful shutdown: pending writes are flushed on close
"""

import json
import logging
import queue
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..position.types import Direction, PositionEntry, PyramidState
from .sink import PersistenceSink, SignalRecord, TradeRecord


class SQLiteTradeStore(PersistenceSink):
    """Buffered SQLite sink.

    Usage:
        store = SQLiteTradeStore("logs/pyramid.db")
        engine = PyramidEngine(gateway, config, persistence=store)
        ...
        store.close()
    """

    def __init__(
        self,
        db_path: str = "pyramid_state.db",
        flush_interval_sec: float = 1.0,
        max_buffer_size: int = 500,
        start_thread: bool = True,
        logger: logging.Logger = None
    ):
        """Initialize store.

        Args:
            db_path: Path to SQLite database (":memory:" for tests)
            flush_interval_sec: How often to flush the buffer
            max_buffer_size: Buffer size that forces an early flush
            start_thread: Start the background flush thread
        """
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._logger = logger or logging.getLogger(__name__)
        self._flush_interval = flush_interval_sec
        self._max_buffer_size = max_buffer_size

        self._db_lock = threading.RLock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._create_schema()

        # Write buffer: (sql, params)
        self._buffer: "queue.Queue[Tuple[str, tuple]]" = queue.Queue()
        self._writes_buffered = 0
        self._writes_flushed = 0
        self._flush_errors = 0

        self._running = start_thread
        self._flush_thread: Optional[threading.Thread] = None
        if start_thread:
            self._flush_thread = threading.Thread(target=self._flush_loop, daemon=True)
            self._flush_thread.start()

    def _create_schema(self):
        """Create persistence tables."""
        with self._db_lock:
            cursor = self.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS signals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL,
                    price REAL,
                    strategy TEXT,
                    account_id TEXT,
                    reason TEXT,
                    received_at REAL NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,
                    size REAL NOT NULL,
                    price REAL NOT NULL,
                    order_type TEXT NOT NULL,
                    reduce_only INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    pyramid_level INTEGER NOT NULL,
                    order_id TEXT,
                    account_id TEXT,
                    executed_at REAL NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pyramid_positions (
                    symbol TEXT PRIMARY KEY,
                    direction TEXT NOT NULL,
                    current_level INTEGER NOT NULL,
                    exit_count INTEGER NOT NULL,
                    current_size REAL NOT NULL,
                    average_entry_price REAL NOT NULL,
                    total_margin_used REAL NOT NULL,
                    is_active INTEGER NOT NULL,
                    entries_json TEXT NOT NULL,
                    last_synced_size REAL,
                    last_sync_time REAL,
                    last_entry_time REAL,
                    updated_at REAL NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_signals_symbol ON signals(symbol)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol)")

            self.conn.commit()

    # =========================================================================
    # Buffering
    # =========================================================================

    def _buffer_write(self, sql: str, params: tuple):
        self._buffer.put((sql, params))
        self._writes_buffered += 1

    def _flush_loop(self):
        """Background thread that periodically flushes the buffer."""
        last_flush = time.time()

        while self._running:
            time.sleep(0.05)

            now = time.time()
            should_flush = (
                now - last_flush >= self._flush_interval or
                self._buffer.qsize() >= self._max_buffer_size
            )

            if should_flush and not self._buffer.empty():
                self.flush()
                last_flush = now

    def flush(self) -> int:
        """Write all buffered records in one transaction.

        Returns:
            Number of writes applied
        """
        writes = []
        while True:
            try:
                writes.append(self._buffer.get_nowait())
            except queue.Empty:
                break

        if not writes:
            return 0

        with self._db_lock:
            try:
                cursor = self.conn.cursor()
                for sql, params in writes:
                    cursor.execute(sql, params)
                self.conn.commit()
                self._writes_flushed += len(writes)
                return len(writes)
            except sqlite3.Error as e:
                self.conn.rollback()
                self._flush_errors += 1
                self._logger.error(f"Persistence flush failed ({len(writes)} writes dropped): {e}")
                return 0

    # =========================================================================
    # Sink interface
    # =========================================================================

    def record_signal(self, record: SignalRecord) -> None:
        self._buffer_write("""
            INSERT INTO signals (symbol, action, status, price, strategy, account_id, reason, received_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.symbol,
            record.action,
            record.status,
            record.price,
            record.strategy,
            record.account_id,
            record.reason,
            record.received_at,
        ))

    def record_trade(self, record: TradeRecord) -> None:
        self._buffer_write("""
            INSERT INTO trades (
                symbol, side, size, price, order_type, reduce_only, reason,
                pyramid_level, order_id, account_id, executed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.symbol,
            record.side,
            record.size,
            record.price,
            record.order_type,
            1 if record.reduce_only else 0,
            record.reason,
            record.pyramid_level,
            record.order_id,
            record.account_id,
            record.executed_at,
        ))

    def record_position(self, state: PyramidState) -> None:
        entries = [
            {
                "size": p.size,
                "entry_price": p.entry_price,
                "margin_used": p.margin_used,
                "timestamp": p.timestamp,
            }
            for p in state.positions
        ]
        self._buffer_write("""
            INSERT INTO pyramid_positions (
                symbol, direction, current_level, exit_count, current_size,
                average_entry_price, total_margin_used, is_active, entries_json,
                last_synced_size, last_sync_time, last_entry_time, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(symbol) DO UPDATE SET
                direction = excluded.direction,
                current_level = excluded.current_level,
                exit_count = excluded.exit_count,
                current_size = excluded.current_size,
                average_entry_price = excluded.average_entry_price,
                total_margin_used = excluded.total_margin_used,
                is_active = excluded.is_active,
                entries_json = excluded.entries_json,
                last_synced_size = excluded.last_synced_size,
                last_sync_time = excluded.last_sync_time,
                last_entry_time = excluded.last_entry_time,
                updated_at = excluded.updated_at
        """, (
            state.symbol,
            state.direction.value,
            state.current_level,
            state.exit_count,
            state.current_size,
            state.average_entry_price,
            state.total_margin_used,
            1 if state.is_active else 0,
            json.dumps(entries),
            state.last_synced_size,
            state.last_sync_time,
            state.last_entry_time,
            time.time(),
        ))

    def delete_position(self, symbol: str) -> None:
        self._buffer_write("DELETE FROM pyramid_positions WHERE symbol = ?", (symbol,))

    # =========================================================================
    # Reads (flush first to see buffered writes)
    # =========================================================================

    def load_positions(self) -> Dict[str, PyramidState]:
        """Load every persisted active pyramid state."""
        with self._db_lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM pyramid_positions WHERE is_active = 1")
            rows = cursor.fetchall()
        return {row["symbol"]: self._row_to_state(row) for row in rows}

    def get_position(self, symbol: str) -> Optional[PyramidState]:
        with self._db_lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM pyramid_positions WHERE symbol = ?", (symbol,))
            row = cursor.fetchone()
        return self._row_to_state(row) if row is not None else None

    def get_trades(self, symbol: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        with self._db_lock:
            cursor = self.conn.cursor()
            if symbol:
                cursor.execute(
                    "SELECT * FROM trades WHERE symbol = ? ORDER BY id DESC LIMIT ?",
                    (symbol, limit)
                )
            else:
                cursor.execute("SELECT * FROM trades ORDER BY id DESC LIMIT ?", (limit,))
            return [dict(row) for row in cursor.fetchall()]

    def get_signals(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._db_lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM signals ORDER BY id DESC LIMIT ?", (limit,))
            return [dict(row) for row in cursor.fetchall()]

    def _row_to_state(self, row: sqlite3.Row) -> PyramidState:
        entries = [
            PositionEntry(
                size=e["size"],
                entry_price=e["entry_price"],
                margin_used=e["margin_used"],
                timestamp=e["timestamp"],
            )
            for e in json.loads(row["entries_json"])
        ]
        return PyramidState(
            symbol=row["symbol"],
            direction=Direction(row["direction"]),
            current_level=row["current_level"],
            exit_count=row["exit_count"],
            positions=entries,
            current_size=row["current_size"],
            average_entry_price=row["average_entry_price"],
            total_margin_used=row["total_margin_used"],
            is_active=bool(row["is_active"]),
            last_synced_size=row["last_synced_size"] or 0.0,
            last_sync_time=row["last_sync_time"],
            last_entry_time=row["last_entry_time"],
        )

    def get_stats(self) -> Dict[str, int]:
        return {
            'writes_buffered': self._writes_buffered,
            'writes_flushed': self._writes_flushed,
            'flush_errors': self._flush_errors,
            'pending': self._buffer.qsize(),
        }

    def close(self) -> None:
        """Stop the flush thread, flush pending writes, close the connection."""
        self._running = False
        if self._flush_thread is not None:
            self._flush_thread.join(timeout=2.0)
        self.flush()
        with self._db_lock:
            self.conn.close()
        self._logger.info(f"SQLiteTradeStore closed ({self._writes_flushed} writes flushed)")
