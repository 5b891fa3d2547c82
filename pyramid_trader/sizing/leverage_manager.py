"""Leverage Manager.

Leverage recommendations from account snapshots supplied by the caller.

Leverage is attenuated by:
- Pyramid level (later entries use less leverage)
- Margin usage above the threshold
- Volatility above the configured bound

Tier caps are a separate lookup keyed only on margin ratio, applied on top
of any recommendation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List

from ..exchange.types import ExchangePosition


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class LeverageConfig:
    """Bounds and attenuation factors for leverage decisions."""
    base_leverage: float = 5.0
    max_leverage: float = 10.0
    min_leverage: float = 1.0
    margin_threshold: float = 0.7       # margin ratio where reduction starts
    critical_margin_ratio: float = 0.85
    low_margin_ratio: float = 0.3
    level_penalty: float = 0.15         # per pyramid level
    min_level_factor: float = 0.5
    min_margin_factor: float = 0.3
    volatility_adjustment: bool = True
    volatility_threshold: float = 0.03
    volatility_factor: float = 0.7

    def validate(self):
        assert 0 < self.min_leverage <= self.max_leverage, "min_leverage must be in (0, max_leverage]"
        assert 0 < self.margin_threshold < 1.0, "margin_threshold must be in (0, 1)"


@dataclass(frozen=True)
class LeverageDecision:
    leverage: float
    risk_level: RiskLevel
    reason: str


@dataclass(frozen=True)
class LeverageTiers:
    """Leverage caps for the current account health."""
    new_position: float
    scale_in: float
    emergency: float
    maximum: float

    def cap_for(self, pyramid_level: int) -> float:
        """Cap for an entry at pyramid_level (0 = opening entry)."""
        return self.new_position if pyramid_level == 0 else self.scale_in

    @property
    def allows_entries(self) -> bool:
        return self.new_position > 0 or self.scale_in > 0


@dataclass(frozen=True)
class OrderLeverageCheck:
    is_valid: bool
    adjusted_leverage: float
    warnings: List[str] = field(default_factory=list)


class LeverageManager:
    """Pure leverage math. Callers supply every snapshot value."""

    def __init__(self, config: LeverageConfig = None):
        self.config = config or LeverageConfig()
        self.config.validate()

    def recommend_leverage(
        self,
        base_leverage: float,
        pyramid_level: int,
        margin_ratio: float,
        volatility_estimate: float = 0.0
    ) -> LeverageDecision:
        """Recommend leverage for the next entry.

        leverage = base
                 * max(0.5, 1 - level * 0.15)
                 * max(0.3, 1 - 2 * (margin_ratio - threshold))   [above threshold]
                 * volatility_factor                              [volatile]
        clamped to [min_leverage, max_leverage], rounded to 0.1.
        """
        cfg = self.config
        leverage = base_leverage
        reasons = []
        risk_level = RiskLevel.MEDIUM

        if pyramid_level > 0:
            leverage *= max(cfg.min_level_factor, 1 - pyramid_level * cfg.level_penalty)
            reasons.append(f"reduced for pyramid level {pyramid_level + 1}")

        if margin_ratio > cfg.margin_threshold:
            reduction = 1 - (margin_ratio - cfg.margin_threshold) * 2
            leverage *= max(cfg.min_margin_factor, reduction)
            reasons.append(f"high margin usage ({margin_ratio * 100:.1f}%)")
            risk_level = RiskLevel.CRITICAL if margin_ratio > cfg.critical_margin_ratio else RiskLevel.HIGH
        elif margin_ratio < cfg.low_margin_ratio:
            risk_level = RiskLevel.LOW

        if cfg.volatility_adjustment and volatility_estimate > cfg.volatility_threshold:
            leverage *= cfg.volatility_factor
            reasons.append("high volatility detected")
            if risk_level == RiskLevel.LOW:
                risk_level = RiskLevel.MEDIUM

        leverage = max(cfg.min_leverage, min(cfg.max_leverage, leverage))

        return LeverageDecision(
            leverage=round(leverage, 1),
            risk_level=risk_level,
            reason=", ".join(reasons) if reasons else "base leverage",
        )

    def leverage_tiers(self, margin_ratio: float) -> LeverageTiers:
        """Fixed tier table keyed on margin ratio."""
        if margin_ratio > 0.8:
            return LeverageTiers(new_position=0.0, scale_in=0.0, emergency=1.0, maximum=1.0)
        if margin_ratio > 0.6:
            return LeverageTiers(new_position=2.0, scale_in=1.5, emergency=1.0, maximum=3.0)
        if margin_ratio > 0.4:
            return LeverageTiers(new_position=3.0, scale_in=2.5, emergency=1.0, maximum=5.0)
        return LeverageTiers(
            new_position=self.config.base_leverage,
            scale_in=self.config.base_leverage * 0.8,
            emergency=1.0,
            maximum=self.config.max_leverage,
        )

    def validate_leverage_for_order(
        self,
        current_margin_ratio: float,
        order_size: float,
        order_price: float,
        account_value: float,
        desired_leverage: float
    ) -> OrderLeverageCheck:
        """Check an order against margin limits, reducing leverage if needed."""
        warnings: List[str] = []
        if account_value <= 0 or desired_leverage <= 0:
            return OrderLeverageCheck(False, 0.0, ["Invalid account value or leverage"])

        order_value = order_size * order_price
        order_margin = order_value / desired_leverage
        new_margin_ratio = current_margin_ratio + order_margin / account_value

        if new_margin_ratio > 0.9:
            return OrderLeverageCheck(False, 0.0, ["Order would exceed 90% margin usage"])

        adjusted = desired_leverage
        if new_margin_ratio > self.config.margin_threshold:
            max_allowed_margin = (self.config.margin_threshold - current_margin_ratio) * account_value
            if max_allowed_margin <= 0:
                return OrderLeverageCheck(False, 0.0, ["No margin left below threshold"])
            adjusted = min(desired_leverage, order_value / max_allowed_margin)
            warnings.append(f"Leverage reduced to {adjusted:.1f}x to maintain safe margin")

        if adjusted > self.config.max_leverage:
            adjusted = self.config.max_leverage
            warnings.append(f"Leverage capped at maximum {self.config.max_leverage:g}x")

        return OrderLeverageCheck(
            is_valid=adjusted >= self.config.min_leverage,
            adjusted_leverage=round(adjusted, 1),
            warnings=warnings,
        )

    def calculate_pyramid_leverage(
        self,
        pyramid_level: int,
        account_health: float,
        fixed_leverage: float
    ) -> float:
        """Leverage for a pyramid level given account health (1 = no margin used)."""
        leverage = fixed_leverage * max(0.6, 1 - pyramid_level * 0.1)

        if account_health < 0.3:
            leverage *= 0.6
        elif account_health < 0.5:
            leverage *= 0.8

        return max(self.config.min_leverage, round(leverage, 1))

    @staticmethod
    def current_account_leverage(positions: Iterable[ExchangePosition], account_value: float) -> float:
        """Aggregate notional over account value."""
        if account_value <= 0:
            return 0.0
        notional = sum(p.notional for p in positions if p.entry_price > 0)
        return notional / account_value

    @staticmethod
    def total_margin_used(positions: Iterable[ExchangePosition], leverage: float) -> float:
        if leverage <= 0:
            return 0.0
        return sum(p.notional for p in positions if p.entry_price > 0) / leverage
