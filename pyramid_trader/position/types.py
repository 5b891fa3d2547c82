"""Pyramid Position Types.

Per-symbol pyramid state plus the records exchanged with reconciliation and
notification collaborators.

Lifecycle: FLAT (level 0) -> LEVEL_1 .. LEVEL_max via confirmed buys,
partial exits keep the level, any full close returns to FLAT.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import List, Optional


class Direction(Enum):
    """Position direction.

    Set when the state is opened or seeded, unchanged until FLAT.
    """
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def from_size(cls, signed_size: float) -> "Direction":
        return cls.LONG if signed_size > 0 else cls.SHORT


@dataclass(frozen=True)
class PositionEntry:
    """One confirmed pyramid entry."""
    size: float
    entry_price: float
    margin_used: float
    timestamp: float


@dataclass
class PyramidState:
    """Pyramid state for one symbol.

    Owned by PyramidEngine. Callers outside the engine only ever see copies.

    Invariant: average_entry_price == sum(size * entry) / sum(size) over
    positions, recomputed after every mutation.
    """
    symbol: str
    direction: Direction = Direction.LONG
    current_level: int = 0
    exit_count: int = 0
    positions: List[PositionEntry] = field(default_factory=list)
    current_size: float = 0.0
    average_entry_price: float = 0.0
    total_margin_used: float = 0.0
    is_active: bool = False
    last_synced_size: float = 0.0
    last_sync_time: Optional[float] = None
    last_entry_time: Optional[float] = None

    @property
    def is_flat(self) -> bool:
        return self.current_level == 0 and not self.is_active

    @property
    def last_entry_price(self) -> Optional[float]:
        return self.positions[-1].entry_price if self.positions else None

    @property
    def phase(self) -> str:
        return "FLAT" if self.is_flat else f"LEVEL_{self.current_level}"

    def add_entry(self, entry: PositionEntry):
        """Append a confirmed entry and recompute derived fields."""
        self.positions.append(entry)
        self.current_level += 1
        self.last_entry_time = entry.timestamp
        self.is_active = True
        self.recompute()

    def recompute(self):
        """Derive size, margin and weighted average entry from positions."""
        total_size = sum(p.size for p in self.positions)
        self.current_size = total_size
        self.total_margin_used = sum(p.margin_used for p in self.positions)
        if total_size > 0:
            self.average_entry_price = (
                sum(p.size * p.entry_price for p in self.positions) / total_size
            )
        else:
            self.average_entry_price = 0.0

    def scale_to(self, new_size: float):
        """Shrink every entry pro rata so the entries sum to new_size.

        Used after exits and exchange size corrections. Uniform scaling keeps
        the weighted average entry unchanged and releases margin in
        proportion.
        """
        total_size = sum(p.size for p in self.positions)
        if total_size <= 0 or new_size <= 0:
            self.positions = []
            self.recompute()
            return
        ratio = new_size / total_size
        self.positions = [
            replace(p, size=p.size * ratio, margin_used=p.margin_used * ratio)
            for p in self.positions
        ]
        self.recompute()
        self.current_size = new_size

    def consolidate(self, size: float, entry_price: float, timestamp: float):
        """Collapse entry history into one entry at the exchange's numbers.

        Level and committed margin are kept.
        """
        margin = self.total_margin_used
        self.positions = [PositionEntry(size, entry_price, margin, timestamp)]
        self.current_size = size
        self.average_entry_price = entry_price
        self.total_margin_used = margin

    def reset(self):
        """Return to FLAT."""
        self.current_level = 0
        self.exit_count = 0
        self.positions = []
        self.current_size = 0.0
        self.average_entry_price = 0.0
        self.total_margin_used = 0.0
        self.is_active = False
        self.last_entry_time = None

    def copy(self) -> "PyramidState":
        return replace(self, positions=list(self.positions))


class SyncAction(Enum):
    """Outcome of reconciling one symbol."""
    NONE = auto()         # Local matches exchange
    RESET_STATE = auto()  # Closed on exchange - local reset
    SEED_STATE = auto()   # Unknown live position - seeded as level 1
    SYNC_SIZE = auto()    # Size updated to exchange value
    SYNC_ENTRY = auto()   # Size and average entry updated to exchange values


@dataclass
class SyncResult:
    """Result of a reconciliation pass for one symbol."""
    symbol: str
    action: SyncAction
    local_size: float
    live_size: float  # signed, as reported
    live_entry_price: float = 0.0
    message: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def is_flat(self) -> bool:
        return self.live_size == 0


@dataclass(frozen=True)
class PositionUpdate:
    """Notification emitted after every successful state mutation."""
    symbol: str
    pyramid_level: int
    exit_count: int
    current_size: float
    average_entry: float
    reason: str = ""
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_state(cls, state: PyramidState, reason: str, timestamp: float = None) -> "PositionUpdate":
        return cls(
            symbol=state.symbol,
            pyramid_level=state.current_level,
            exit_count=state.exit_count,
            current_size=state.current_size,
            average_entry=state.average_entry_price,
            reason=reason,
            timestamp=timestamp if timestamp is not None else time.time(),
        )
