"""Risk package.

Provides:
- RiskMonitor: stop loss, trailing stop, account deleverage, margin alerts
- RiskSettings / RiskEvent / MarginAlert / RiskReport
"""

from .types import (
    RiskSettings,
    RiskAction,
    RiskEvent,
    MarginAlert,
    RiskReport,
)
from .monitor import RiskMonitor

__all__ = [
    # Types
    "RiskSettings",
    "RiskAction",
    "RiskEvent",
    "MarginAlert",
    "RiskReport",
    # Monitor
    "RiskMonitor",
]
