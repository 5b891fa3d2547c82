"""Tests for Margin Calculator.

Sizing, exposure cap, stop loss and margin health classification.
"""

import pytest

from pyramid_trader.sizing.margin_calculator import (
    MarginCalculator,
    MarginRejection,
    MarginHealthLevel,
    floor_to_lot,
)


@pytest.fixture
def calc():
    return MarginCalculator()


class TestMarginRequirements:
    """Test entry sizing."""

    def test_first_entry_sizing(self, calc):
        """$1000 account, 10% margin, 5x at $100 -> $100 margin, 5.0 units."""
        req = calc.calculate_margin_requirements(
            account_value=1000.0, price=100.0, margin_pct=10.0, leverage=5.0
        )

        assert req.is_valid
        assert req.required_margin == pytest.approx(100.0)
        assert req.position_size == pytest.approx(5.0)
        assert req.available_margin == pytest.approx(950.0)
        assert req.margin_ratio == pytest.approx(0.1)
        assert req.notional == pytest.approx(500.0)
        assert req.rejection is None

    def test_size_floored_to_lot(self, calc):
        """Raw size is floored to the asset lot, never rounded up."""
        req = calc.calculate_margin_requirements(
            account_value=1000.0, price=3000.0, margin_pct=10.0, leverage=5.0, lot_size=0.0001
        )

        assert req.is_valid
        assert req.raw_position_size == pytest.approx(500.0 / 3000.0)
        assert req.position_size == pytest.approx(0.1666)
        assert req.position_size <= req.raw_position_size

    def test_exposure_cap_rejects(self, calc):
        """Existing 600 + 150 > 70% of 1000 -> EXPOSURE rejection."""
        req = calc.calculate_margin_requirements(
            account_value=1000.0, price=100.0, margin_pct=15.0, leverage=5.0,
            existing_margin_used=600.0, max_exposure=0.7
        )

        assert not req.is_valid
        assert req.rejection == MarginRejection.EXPOSURE
        assert req.required_margin == pytest.approx(150.0)
        assert req.position_size == 0.0

    def test_exposure_exactly_at_cap_allowed(self, calc):
        """Filling the exposure cap exactly is still valid."""
        req = calc.calculate_margin_requirements(
            account_value=1000.0, price=100.0, margin_pct=25.0, leverage=5.0,
            existing_margin_used=450.0, max_exposure=0.7
        )

        assert req.is_valid
        assert req.margin_ratio == pytest.approx(0.7)

    def test_insufficient_available_margin(self, calc):
        """Only 95% of free balance counts as available."""
        req = calc.calculate_margin_requirements(
            account_value=1000.0, price=100.0, margin_pct=10.0, leverage=5.0,
            existing_margin_used=900.0, max_exposure=1.0
        )

        assert not req.is_valid
        assert req.rejection == MarginRejection.INSUFFICIENT_MARGIN
        assert req.available_margin == pytest.approx(95.0)

    def test_below_min_size(self, calc):
        """An entry smaller than one lot is rejected."""
        req = calc.calculate_margin_requirements(
            account_value=1000.0, price=60000.0, margin_pct=1.0, leverage=1.0, lot_size=0.001
        )

        assert not req.is_valid
        assert req.rejection == MarginRejection.BELOW_MIN_SIZE

    def test_small_account_rejected(self, calc):
        """Accounts below the minimum cannot open entries."""
        req = calc.calculate_margin_requirements(
            account_value=50.0, price=100.0, margin_pct=10.0, leverage=5.0
        )

        assert not req.is_valid
        assert req.rejection == MarginRejection.INSUFFICIENT_ACCOUNT

    @pytest.mark.parametrize("price,leverage", [(0.0, 5.0), (-1.0, 5.0), (100.0, 0.0)])
    def test_invalid_inputs(self, calc, price, leverage):
        """Zero or negative price/leverage is INVALID_INPUT."""
        req = calc.calculate_margin_requirements(
            account_value=1000.0, price=price, margin_pct=10.0, leverage=leverage
        )

        assert not req.is_valid
        assert req.rejection == MarginRejection.INVALID_INPUT

    def test_leverage_capped_with_warning(self, calc):
        """Leverage above 50x is applied as 50x."""
        req = calc.calculate_margin_requirements(
            account_value=1000.0, price=100.0, margin_pct=10.0, leverage=100.0
        )

        assert req.is_valid
        assert req.leverage == 50.0
        assert req.position_size == pytest.approx(50.0)
        assert any("capped" in w for w in req.warnings)


class TestStopLoss:
    """Test stop price derivation."""

    def test_long_stop(self, calc):
        """10% margin loss at 5x is a 2% price move."""
        levels = calc.calculate_stop_loss(100.0, 5.0, max_margin_loss_pct=10.0, size=5.0)

        assert levels.price_move_pct == pytest.approx(2.0)
        assert levels.stop_price == pytest.approx(98.0)
        assert levels.loss_amount == pytest.approx(10.0)

    def test_short_stop_above_entry(self, calc):
        """Short stops sit above entry."""
        levels = calc.calculate_stop_loss(100.0, 5.0, max_margin_loss_pct=10.0, is_long=False)

        assert levels.stop_price == pytest.approx(102.0)

    def test_invalid_entry_raises(self, calc):
        with pytest.raises(ValueError):
            calc.calculate_stop_loss(0.0, 5.0)


class TestMarginHealth:
    """Test account health bands."""

    @pytest.mark.parametrize("used,level", [
        (300.0, MarginHealthLevel.HEALTHY),
        (600.0, MarginHealthLevel.WARNING),
        (750.0, MarginHealthLevel.CRITICAL),
        (900.0, MarginHealthLevel.EMERGENCY),
    ])
    def test_bands(self, calc, used, level):
        health = calc.check_margin_health(1000.0, used)

        assert health.level == level
        assert health.margin_ratio == pytest.approx(used / 1000.0)

    def test_critical_requires_action(self, calc):
        """CRITICAL and EMERGENCY require action, WARNING does not."""
        assert calc.check_margin_health(1000.0, 750.0).requires_action
        assert not calc.check_margin_health(1000.0, 600.0).requires_action

    def test_zero_account_is_emergency(self, calc):
        health = calc.check_margin_health(0.0, 10.0)

        assert health.level == MarginHealthLevel.EMERGENCY
        assert not health.is_healthy

    def test_low_free_margin_warning(self, calc):
        health = calc.check_margin_health(1000.0, 950.0)

        assert "Low free margin available" in health.warnings


class TestHelpers:
    """Test lot flooring, level sizing and leverage checks."""

    def test_floor_to_lot(self):
        assert floor_to_lot(0.123456, 0.001) == pytest.approx(0.123)
        assert floor_to_lot(6.8181, 0.01) == pytest.approx(6.81)
        assert floor_to_lot(-1.0, 0.01) == 0.0

    def test_pyramid_size_for_level(self, calc):
        """Level 1 (second entry) of [10, 15, 20, 25] uses 15%."""
        size = calc.calculate_pyramid_size(1, 1000.0, 100.0, [10, 15, 20, 25], 5.0)

        assert size.margin == pytest.approx(150.0)
        assert size.value == pytest.approx(750.0)
        assert size.size == pytest.approx(7.5)

    def test_pyramid_size_past_last_level(self, calc):
        size = calc.calculate_pyramid_size(4, 1000.0, 100.0, [10, 15, 20, 25], 5.0)

        assert size.size == 0.0
        assert size.margin == 0.0

    def test_validate_leverage(self, calc):
        assert calc.validate_leverage(0).adjusted_leverage == 5.0
        assert not calc.validate_leverage(60).is_valid
        assert calc.validate_leverage(60).adjusted_leverage == 50.0
        check = calc.validate_leverage(25)
        assert check.is_valid and check.warning

    def test_dynamic_leverage(self, calc):
        """High volatility and weak health both scale leverage down."""
        assert calc.calculate_dynamic_leverage(10.0, 0.06, 0.4) == pytest.approx(4.2)
        assert calc.calculate_dynamic_leverage(10.0, 0.01, 0.9) == pytest.approx(10.0)

    def test_close_margin(self, calc):
        assert calc.calculate_close_margin(5.0, 100.0, is_profit=True) == 0.0
        assert calc.calculate_close_margin(-5.0, 100.0, is_profit=False) == pytest.approx(15.0)
