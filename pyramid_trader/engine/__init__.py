"""Pyramid engine package.

Provides:
- PyramidEngine: signal -> order state machine, single owner of PyramidState
- TradingSignal / AccountContext / SignalResult
"""

from .types import (
    SignalAction,
    TradingSignal,
    AccountContext,
    SignalResult,
    normalize_symbol,
)
from .pyramid_engine import PyramidEngine

__all__ = [
    # Types
    "SignalAction",
    "TradingSignal",
    "AccountContext",
    "SignalResult",
    "normalize_symbol",
    # Engine
    "PyramidEngine",
]
