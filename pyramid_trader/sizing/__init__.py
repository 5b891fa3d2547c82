"""
Sizing Module.

Pure position-sizing and leverage math:

- MarginCalculator: margin requirements, stop loss, margin health
- LeverageManager: leverage recommendation and tier caps
- VolatilityEstimator: rolling volatility for adaptive leverage
"""

from .margin_calculator import (
    MarginCalculator,
    MarginRequirements,
    MarginRejection,
    MarginHealth,
    MarginHealthLevel,
    StopLossLevels,
    PyramidSize,
    LeverageCheck,
    floor_to_lot,
)

from .leverage_manager import (
    LeverageManager,
    LeverageConfig,
    LeverageDecision,
    LeverageTiers,
    OrderLeverageCheck,
    RiskLevel,
)

from .volatility import VolatilityEstimator

__all__ = [
    # Margin
    'MarginCalculator',
    'MarginRequirements',
    'MarginRejection',
    'MarginHealth',
    'MarginHealthLevel',
    'StopLossLevels',
    'PyramidSize',
    'LeverageCheck',
    'floor_to_lot',
    # Leverage
    'LeverageManager',
    'LeverageConfig',
    'LeverageDecision',
    'LeverageTiers',
    'OrderLeverageCheck',
    'RiskLevel',
    # Volatility
    'VolatilityEstimator',
]
