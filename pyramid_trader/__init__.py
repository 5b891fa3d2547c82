"""
Pyramid Trader.

Leveraged pyramid position engine for perpetual futures:

- config: presets, entry policy, environment loading
- sizing: margin and leverage math
- exchange: gateway contract, Hyperliquid adapter, mock, circuit breaker
- position: pyramid state and exchange reconciliation
- engine: signal -> order state machine
- risk: stop loss, deleverage, margin alerts
- persistence: buffered SQLite sink
- service: long-running process wiring
"""

from .errors import (
    PyramidError,
    ValidationError,
    ExposureExceeded,
    ExchangeError,
    ExchangeTimeout,
    StateInconsistency,
    ConfigError,
    EntriesSuspended,
)

from .config import (
    ConfigPreset,
    LeverageMode,
    EntryPolicy,
    PyramidConfig,
    ServiceSettings,
    load_pyramid_config_from_env,
    load_service_settings_from_env,
)

from .engine import (
    PyramidEngine,
    TradingSignal,
    AccountContext,
    SignalAction,
    SignalResult,
)

from .position import (
    PyramidState,
    PositionEntry,
    PositionUpdate,
    PositionSynchronizer,
)

from .risk import RiskMonitor, RiskSettings
from .service import PyramidService

__version__ = "1.0.0"

__all__ = [
    # Errors
    'PyramidError',
    'ValidationError',
    'ExposureExceeded',
    'ExchangeError',
    'ExchangeTimeout',
    'StateInconsistency',
    'ConfigError',
    'EntriesSuspended',
    # Config
    'ConfigPreset',
    'LeverageMode',
    'EntryPolicy',
    'PyramidConfig',
    'ServiceSettings',
    'load_pyramid_config_from_env',
    'load_service_settings_from_env',
    # Engine
    'PyramidEngine',
    'TradingSignal',
    'AccountContext',
    'SignalAction',
    'SignalResult',
    # Position
    'PyramidState',
    'PositionEntry',
    'PositionUpdate',
    'PositionSynchronizer',
    # Risk / service
    'RiskMonitor',
    'RiskSettings',
    'PyramidService',
]
