"""Risk Types.

Settings, actions and reports for the risk monitor.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..sizing.margin_calculator import MarginHealthLevel


@dataclass(frozen=True)
class RiskSettings:
    """Risk monitor configuration.

    Stop-loss and trailing percentages come from PyramidConfig; these are
    the monitor's own knobs.
    """
    check_interval_seconds: float = 5.0
    deleverage_multiple: float = 5.0     # notional / account value that triggers deleverage
    deleverage_fraction: float = 0.5     # share of each position closed on deleverage
    deleverage_cooldown_seconds: float = 60.0
    trailing_stop_enabled: bool = False
    max_events: int = 200

    def validate(self):
        assert self.check_interval_seconds > 0, "check_interval_seconds must be positive"
        assert self.deleverage_multiple > 0, "deleverage_multiple must be positive"
        assert 0 < self.deleverage_fraction <= 1.0, "deleverage_fraction must be in (0, 1]"


class RiskAction(Enum):
    """What the monitor did about a position."""
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    DELEVERAGE = "deleverage"
    MARGIN_ALERT = "margin_alert"


@dataclass(frozen=True)
class RiskEvent:
    """Record of a protective action."""
    symbol: str  # "*" for account-wide events
    action: RiskAction
    reason: str
    executed: bool
    mark_price: Optional[float] = None
    pnl_pct: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class MarginAlert:
    """Account margin usage outside the healthy band."""
    level: MarginHealthLevel
    margin_ratio: float
    margin_used: float
    account_value: float
    warnings: List[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)


@dataclass
class RiskReport:
    """Outcome of one monitor pass."""
    stop_losses: List[str] = field(default_factory=list)
    trailing_stops: List[str] = field(default_factory=list)
    deleveraged: List[str] = field(default_factory=list)
    exposure_multiple: float = 0.0
    margin_alert: Optional[MarginAlert] = None
    errors: List[str] = field(default_factory=list)

    @property
    def actions_taken(self) -> int:
        return len(self.stop_losses) + len(self.trailing_stops) + len(self.deleveraged)
