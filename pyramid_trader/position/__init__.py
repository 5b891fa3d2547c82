"""Position package.

Provides:
- Pyramid state types (PyramidState, PositionEntry, Direction)
- Reconciliation results and position update notifications
- PositionSynchronizer (exchange is the source of truth)
"""

from .types import (
    Direction,
    PositionEntry,
    PyramidState,
    SyncAction,
    SyncResult,
    PositionUpdate,
)
from .synchronizer import PositionSynchronizer

__all__ = [
    "Direction",
    "PositionEntry",
    "PyramidState",
    "SyncAction",
    "SyncResult",
    "PositionUpdate",
    "PositionSynchronizer",
]
