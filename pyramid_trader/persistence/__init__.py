"""Persistence package.

Provides:
- PersistenceSink contract and NullSink
- SignalRecord / TradeRecord
- SQLiteTradeStore (buffered, non-blocking SQLite sink)
"""

from .sink import PersistenceSink, NullSink, SignalRecord, TradeRecord
from .sqlite_store import SQLiteTradeStore

__all__ = [
    "PersistenceSink",
    "NullSink",
    "SignalRecord",
    "TradeRecord",
    "SQLiteTradeStore",
]
