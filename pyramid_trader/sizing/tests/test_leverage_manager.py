"""Tests for Leverage Manager and volatility estimate."""

import math

import pytest

from pyramid_trader.exchange.types import ExchangePosition
from pyramid_trader.sizing.leverage_manager import LeverageConfig, LeverageManager, RiskLevel
from pyramid_trader.sizing.volatility import VolatilityEstimator


@pytest.fixture
def manager():
    return LeverageManager(LeverageConfig(base_leverage=5.0, max_leverage=10.0))


class TestRecommendLeverage:
    """Test leverage attenuation."""

    def test_base_leverage_when_healthy(self, manager):
        decision = manager.recommend_leverage(5.0, 0, 0.1)

        assert decision.leverage == 5.0
        assert decision.risk_level == RiskLevel.LOW
        assert decision.reason == "base leverage"

    def test_reduced_for_pyramid_level(self, manager):
        """Each level removes 15%, floored at 50%."""
        assert manager.recommend_leverage(5.0, 2, 0.4).leverage == pytest.approx(3.5)
        assert manager.recommend_leverage(5.0, 6, 0.4).leverage == pytest.approx(2.5)

    def test_reduced_above_margin_threshold(self, manager):
        decision = manager.recommend_leverage(5.0, 0, 0.8)

        assert decision.leverage == pytest.approx(4.0)
        assert decision.risk_level == RiskLevel.HIGH

    def test_critical_margin(self, manager):
        decision = manager.recommend_leverage(5.0, 0, 0.9)

        assert decision.leverage == pytest.approx(3.0)
        assert decision.risk_level == RiskLevel.CRITICAL

    def test_volatility_reduction(self, manager):
        decision = manager.recommend_leverage(5.0, 0, 0.1, volatility_estimate=0.05)

        assert decision.leverage == pytest.approx(3.5)
        assert decision.risk_level == RiskLevel.MEDIUM
        assert "volatility" in decision.reason

    def test_clamped_to_min(self, manager):
        assert manager.recommend_leverage(1.0, 3, 0.1).leverage == 1.0


class TestLeverageTiers:
    """Test margin-ratio tier caps."""

    def test_no_entries_above_80pct(self, manager):
        tiers = manager.leverage_tiers(0.85)

        assert not tiers.allows_entries
        assert tiers.cap_for(0) == 0.0
        assert tiers.maximum == 1.0

    def test_mid_tiers(self, manager):
        tiers = manager.leverage_tiers(0.7)
        assert (tiers.new_position, tiers.scale_in, tiers.maximum) == (2.0, 1.5, 3.0)

        tiers = manager.leverage_tiers(0.5)
        assert (tiers.new_position, tiers.scale_in, tiers.maximum) == (3.0, 2.5, 5.0)

    def test_healthy_tier_uses_config(self, manager):
        tiers = manager.leverage_tiers(0.1)

        assert tiers.cap_for(0) == 5.0
        assert tiers.cap_for(2) == pytest.approx(4.0)
        assert tiers.maximum == 10.0


class TestOrderChecks:
    """Test order-level leverage validation and aggregates."""

    def test_order_within_limits(self, manager):
        check = manager.validate_leverage_for_order(0.0, 1.0, 1000.0, 1000.0, 5.0)

        assert check.is_valid
        assert check.adjusted_leverage == 5.0
        assert check.warnings == []

    def test_order_over_90pct_rejected(self, manager):
        check = manager.validate_leverage_for_order(0.85, 1.0, 1000.0, 1000.0, 5.0)

        assert not check.is_valid

    def test_account_aggregates(self):
        positions = [
            ExchangePosition("SOL", 10.0, 100.0),
            ExchangePosition("ETH", -1.0, 3000.0),
        ]

        assert LeverageManager.current_account_leverage(positions, 1000.0) == pytest.approx(4.0)
        assert LeverageManager.total_margin_used(positions, 5.0) == pytest.approx(800.0)
        assert LeverageManager.current_account_leverage(positions, 0.0) == 0.0

    def test_pyramid_leverage(self, manager):
        assert manager.calculate_pyramid_leverage(2, 0.4, 5.0) == pytest.approx(3.2)
        assert manager.calculate_pyramid_leverage(0, 0.9, 5.0) == pytest.approx(5.0)


class TestVolatilityEstimator:
    """Test rolling volatility."""

    def test_default_until_enough_samples(self):
        estimator = VolatilityEstimator(min_samples=5, default_estimate=0.02)
        for price in (100.0, 101.0, 102.0):
            estimator.record("SOL", price)

        assert estimator.sample_count("SOL") == 3
        assert estimator.estimate("SOL") == 0.02
        assert estimator.estimate("ETH") == 0.02

    def test_constant_prices_have_zero_volatility(self):
        estimator = VolatilityEstimator(min_samples=3)
        for _ in range(5):
            estimator.record("SOL", 100.0)

        assert estimator.estimate("SOL") == pytest.approx(0.0)

    def test_alternating_prices(self):
        """Alternating +/- moves give std of log returns equal to |log(1.1)|."""
        estimator = VolatilityEstimator(min_samples=3)
        for price in (100.0, 110.0, 100.0, 110.0, 100.0):
            estimator.record("SOL", price)

        assert estimator.estimate("SOL") == pytest.approx(math.log(1.1))

    def test_window_and_invalid_prices(self):
        estimator = VolatilityEstimator(window=3)
        for price in (1.0, 2.0, 3.0, 4.0, -1.0, 0.0):
            estimator.record("SOL", price)

        assert estimator.sample_count("SOL") == 3
