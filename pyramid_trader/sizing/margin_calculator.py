"""Margin Calculator.

Position sizing and margin math for leveraged pyramid entries.

Implements:
- Margin requirements for a new entry (exposure cap, lot flooring)
- Stop loss price for a maximum margin loss
- Account margin health classification
- Pyramid level sizing and leverage sanity checks
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import List, Optional, Sequence


MIN_ORDER_SIZE = 0.01           # fallback lot size when none is supplied
MAX_LEVERAGE = 50.0
DEFAULT_LEVERAGE = 5.0
HIGH_LEVERAGE_WARNING = 20.0
MAINTENANCE_MARGIN_RATIO = 0.03
MARGIN_BUFFER = 0.95            # only 95% of free balance counts as available
MIN_ACCOUNT_BALANCE = 100.0
WARNING_MARGIN_RATIO = 0.8

# Account health bands (margin used / account value)
HEALTH_WARNING_RATIO = 0.50
HEALTH_CRITICAL_RATIO = 0.70
HEALTH_EMERGENCY_RATIO = 0.85

_EXPOSURE_EPSILON = 1e-9


def floor_to_lot(size: float, lot_size: float) -> float:
    """Floor size to a whole multiple of lot_size."""
    if size <= 0 or lot_size <= 0:
        return 0.0
    lot = Decimal(str(lot_size))
    lots = (Decimal(str(size)) / lot).to_integral_value(rounding=ROUND_DOWN)
    return float(lots * lot)


class MarginRejection(Enum):
    """Why a margin calculation was rejected."""
    INVALID_INPUT = "invalid_input"
    INSUFFICIENT_ACCOUNT = "insufficient_account"
    INSUFFICIENT_MARGIN = "insufficient_margin"
    EXPOSURE = "exposure"
    BELOW_MIN_SIZE = "below_min_size"


class MarginHealthLevel(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class MarginRequirements:
    """Sizing outcome for one prospective entry."""
    required_margin: float
    available_margin: float
    position_size: float      # floored to lot size
    raw_position_size: float  # before flooring
    leverage: float
    margin_ratio: float       # (existing + required) / account value
    is_valid: bool
    warnings: List[str] = field(default_factory=list)
    rejection: Optional[MarginRejection] = None

    @property
    def notional(self) -> float:
        return self.required_margin * self.leverage


@dataclass(frozen=True)
class StopLossLevels:
    stop_price: float
    price_move_pct: float  # percent move from entry that loses max margin
    loss_amount: float     # quote loss at the stop for `size` units


@dataclass(frozen=True)
class MarginHealth:
    margin_ratio: float
    level: MarginHealthLevel
    is_healthy: bool
    requires_action: bool
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PyramidSize:
    size: float
    margin: float
    value: float


@dataclass(frozen=True)
class LeverageCheck:
    is_valid: bool
    adjusted_leverage: float
    warning: Optional[str] = None


class MarginCalculator:
    """Pure margin and sizing calculations.

    No I/O and no shared state. Lot sizes are passed in by the caller from
    exchange metadata.
    """

    def calculate_margin_requirements(
        self,
        account_value: float,
        price: float,
        margin_pct: float,
        leverage: float,
        existing_margin_used: float = 0.0,
        max_exposure: float = 0.7,
        lot_size: float = MIN_ORDER_SIZE,
        min_account_value: float = MIN_ACCOUNT_BALANCE
    ) -> MarginRequirements:
        """Size a new entry.

        required_margin = account_value * margin_pct / 100
        position_size   = floor_lot(required_margin * leverage / price)

        Args:
            account_value: Total account value
            price: Current market price
            margin_pct: Percent of account value committed as margin
            leverage: Target leverage (capped at MAX_LEVERAGE)
            existing_margin_used: Margin already committed to this pyramid
            max_exposure: Max fraction of account value committed as margin
            lot_size: Asset lot size from exchange metadata
            min_account_value: Smallest account allowed to open entries

        Returns:
            MarginRequirements; is_valid=False carries a rejection reason
        """
        if account_value <= 0 or price <= 0 or margin_pct <= 0 or leverage <= 0:
            return self._invalid(
                MarginRejection.INVALID_INPUT,
                f"Invalid input: account={account_value} price={price} "
                f"margin_pct={margin_pct} leverage={leverage}"
            )

        if account_value < min_account_value:
            return self._invalid(
                MarginRejection.INSUFFICIENT_ACCOUNT,
                f"Account value too low: ${account_value:.2f} < ${min_account_value:.2f}"
            )

        warnings: List[str] = []
        existing = max(existing_margin_used, 0.0)
        available_balance = account_value - existing
        available_margin = max(available_balance, 0.0) * MARGIN_BUFFER
        required_margin = account_value * (margin_pct / 100.0)
        max_allowed_margin = account_value * max_exposure
        new_total_margin = existing + required_margin
        margin_ratio = new_total_margin / account_value

        if new_total_margin > max_allowed_margin * (1 + _EXPOSURE_EPSILON):
            return self._invalid(
                MarginRejection.EXPOSURE,
                f"Would exceed max exposure: {margin_ratio * 100:.1f}% > {max_exposure * 100:.0f}%",
                required_margin=required_margin,
                available_margin=available_margin,
                margin_ratio=margin_ratio,
            )

        if required_margin > available_margin:
            return self._invalid(
                MarginRejection.INSUFFICIENT_MARGIN,
                f"Insufficient available margin: ${required_margin:.2f} > ${available_margin:.2f}",
                required_margin=required_margin,
                available_margin=available_margin,
                margin_ratio=margin_ratio,
            )

        applied_leverage = min(leverage, MAX_LEVERAGE)
        if applied_leverage < leverage:
            warnings.append(f"Leverage capped at {MAX_LEVERAGE:.0f}x")

        raw_size = required_margin * applied_leverage / price
        position_size = floor_to_lot(raw_size, lot_size)

        if position_size < lot_size:
            return self._invalid(
                MarginRejection.BELOW_MIN_SIZE,
                f"Position size too small: {raw_size:.6f} < lot {lot_size}",
                required_margin=required_margin,
                available_margin=available_margin,
                margin_ratio=margin_ratio,
            )

        if margin_ratio > WARNING_MARGIN_RATIO:
            warnings.append(f"High margin usage: {margin_ratio * 100:.1f}%")

        maintenance_margin = position_size * price * MAINTENANCE_MARGIN_RATIO
        if available_balance < maintenance_margin * 2:
            warnings.append("Close to maintenance margin requirements")

        return MarginRequirements(
            required_margin=required_margin,
            available_margin=available_margin,
            position_size=position_size,
            raw_position_size=raw_size,
            leverage=applied_leverage,
            margin_ratio=margin_ratio,
            is_valid=True,
            warnings=warnings,
        )

    def calculate_stop_loss(
        self,
        entry_price: float,
        leverage: float,
        max_margin_loss_pct: float = 10.0,
        is_long: bool = True,
        size: float = 1.0
    ) -> StopLossLevels:
        """Stop price that loses max_margin_loss_pct of margin.

        With leverage L a price move of p% changes margin by L*p%, so the
        stop sits max_margin_loss_pct / L percent away from entry.
        """
        if entry_price <= 0 or leverage <= 0:
            raise ValueError(f"entry_price and leverage must be positive: {entry_price}, {leverage}")

        price_move_pct = max_margin_loss_pct / leverage
        if is_long:
            stop_price = entry_price * (1 - price_move_pct / 100)
        else:
            stop_price = entry_price * (1 + price_move_pct / 100)

        return StopLossLevels(
            stop_price=stop_price,
            price_move_pct=price_move_pct,
            loss_amount=abs(entry_price - stop_price) * size,
        )

    def check_margin_health(self, account_value: float, total_margin_used: float) -> MarginHealth:
        """Classify account margin usage.

        healthy < 50% <= warning < 70% <= critical <= 85% < emergency
        """
        warnings: List[str] = []

        if account_value <= 0:
            return MarginHealth(
                margin_ratio=float("inf"),
                level=MarginHealthLevel.EMERGENCY,
                is_healthy=False,
                requires_action=True,
                warnings=["Account value is zero or negative"],
            )

        margin_ratio = max(total_margin_used, 0.0) / account_value

        if margin_ratio > HEALTH_EMERGENCY_RATIO:
            level = MarginHealthLevel.EMERGENCY
            warnings.append(f"EMERGENCY: margin usage {margin_ratio * 100:.1f}%")
        elif margin_ratio >= HEALTH_CRITICAL_RATIO:
            level = MarginHealthLevel.CRITICAL
            warnings.append(f"CRITICAL: margin usage {margin_ratio * 100:.1f}%")
        elif margin_ratio >= HEALTH_WARNING_RATIO:
            level = MarginHealthLevel.WARNING
            warnings.append(f"High margin usage: {margin_ratio * 100:.1f}%")
        else:
            level = MarginHealthLevel.HEALTHY

        free_margin = account_value - total_margin_used
        if free_margin < account_value * 0.1:
            warnings.append("Low free margin available")

        return MarginHealth(
            margin_ratio=margin_ratio,
            level=level,
            is_healthy=level == MarginHealthLevel.HEALTHY,
            requires_action=level in (MarginHealthLevel.CRITICAL, MarginHealthLevel.EMERGENCY),
            warnings=warnings,
        )

    def calculate_pyramid_size(
        self,
        pyramid_level: int,
        account_value: float,
        price: float,
        margin_percentages: Sequence[float],
        leverage: float,
        lot_size: float = MIN_ORDER_SIZE
    ) -> PyramidSize:
        """Size of the entry at pyramid_level (0-indexed); zeros past the end."""
        if pyramid_level < 0 or pyramid_level >= len(margin_percentages) or price <= 0:
            return PyramidSize(size=0.0, margin=0.0, value=0.0)

        margin = account_value * (margin_percentages[pyramid_level] / 100.0)
        value = margin * leverage
        return PyramidSize(size=floor_to_lot(value / price, lot_size), margin=margin, value=value)

    def validate_leverage(self, leverage: float) -> LeverageCheck:
        if leverage <= 0:
            return LeverageCheck(False, DEFAULT_LEVERAGE, "Invalid leverage, using default")
        if leverage > MAX_LEVERAGE:
            return LeverageCheck(False, MAX_LEVERAGE, f"Leverage too high, capped at {MAX_LEVERAGE:.0f}x")
        if leverage > HIGH_LEVERAGE_WARNING:
            return LeverageCheck(True, leverage, "High leverage - increased risk")
        return LeverageCheck(True, leverage)

    def calculate_dynamic_leverage(
        self,
        base_leverage: float,
        volatility: float,
        account_health: float
    ) -> float:
        """Scale leverage down for volatility and weak account health.

        Args:
            base_leverage: Starting leverage
            volatility: Fractional volatility estimate (0.02 = 2%)
            account_health: 0..1, 1 = no margin in use
        """
        leverage = base_leverage

        if volatility > 0.05:
            leverage *= 0.6
        elif volatility > 0.02:
            leverage *= 0.8

        if account_health < 0.5:
            leverage *= 0.7

        return max(1.0, min(leverage, MAX_LEVERAGE))

    def calculate_close_margin(self, position_size: float, price: float, is_profit: bool) -> float:
        """Margin to reserve while closing; nothing when in profit."""
        if is_profit:
            return 0.0
        return abs(position_size) * price * MAINTENANCE_MARGIN_RATIO

    @staticmethod
    def _invalid(
        rejection: MarginRejection,
        reason: str,
        required_margin: float = 0.0,
        available_margin: float = 0.0,
        margin_ratio: float = 0.0
    ) -> MarginRequirements:
        return MarginRequirements(
            required_margin=required_margin,
            available_margin=available_margin,
            position_size=0.0,
            raw_position_size=0.0,
            leverage=0.0,
            margin_ratio=margin_ratio,
            is_valid=False,
            warnings=[reason],
            rejection=rejection,
        )
