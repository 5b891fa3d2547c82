"""Tests for pyramid configuration, presets and environment loading."""

import pytest

from pyramid_trader.config import (
    ConfigPreset,
    EntryPolicy,
    LeverageMode,
    PyramidConfig,
    load_pyramid_config_from_env,
    load_service_settings_from_env,
)
from pyramid_trader.errors import ConfigError


class TestPresets:
    """Test named presets."""

    def test_default_is_moderate(self):
        config = PyramidConfig()

        assert config.preset == ConfigPreset.MODERATE
        assert config.margin_percentages == (10.0, 15.0, 20.0, 25.0)
        assert config.first_exit_fraction == 0.5
        assert config.fixed_leverage == 5.0
        assert config.max_account_exposure == 0.7

    def test_named_presets(self):
        conservative = PyramidConfig.from_preset(ConfigPreset.CONSERVATIVE)
        aggressive = PyramidConfig.from_preset(ConfigPreset.AGGRESSIVE, max_account_exposure=0.9)

        assert conservative.margin_percentages == (5.0, 10.0, 15.0, 20.0)
        assert aggressive.margin_percentages == (15.0, 20.0, 25.0, 30.0)
        assert aggressive.max_account_exposure == 0.9

    def test_custom(self):
        config = PyramidConfig.custom([5, 10, 20], exit_percentages=[30, 100], max_pyramid_levels=3)

        assert config.preset == ConfigPreset.CUSTOM
        assert config.margin_percentages == (5.0, 10.0, 20.0)
        assert config.first_exit_fraction == pytest.approx(0.3)
        assert config.margin_percentage_for_level(2) == 20.0

    def test_with_entry_policy(self):
        """Returns a validated copy; the original keeps its policy."""
        base = PyramidConfig.from_preset(ConfigPreset.CONSERVATIVE)

        strict = base.with_entry_policy(EntryPolicy(min_favorable_move_pct=1.0, cooldown_seconds=30))

        assert strict.entry_policy.min_favorable_move_pct == 1.0
        assert not strict.entry_policy.is_permissive
        assert strict.margin_percentages == base.margin_percentages
        assert base.entry_policy.is_permissive
        with pytest.raises(ConfigError):
            base.with_entry_policy(EntryPolicy(cooldown_seconds=-5))

    def test_custom_requires_margins(self):
        with pytest.raises(ConfigError):
            PyramidConfig.from_preset(ConfigPreset.CUSTOM)

    def test_margin_for_level_out_of_range(self):
        with pytest.raises(ConfigError):
            PyramidConfig().margin_percentage_for_level(4)


class TestValidation:
    """Test malformed configs are refused."""

    @pytest.mark.parametrize("overrides", [
        {"margin_percentages": (20.0, 10.0, 30.0, 40.0)},
        {"margin_percentages": (10.0, 20.0)},
        {"margin_percentages": (0.0, 10.0, 20.0, 30.0)},
        {"exit_percentages": (150.0,)},
        {"max_pyramid_levels": 0},
        {"max_account_exposure": 1.5},
        {"stop_loss_percentage": 0.0},
        {"fixed_leverage": 0.0},
        {"slippage_tolerance": 0.2},
        {"entry_policy": EntryPolicy(cooldown_seconds=-1)},
    ])
    def test_rejected(self, overrides):
        with pytest.raises(ConfigError):
            PyramidConfig(**overrides)


class TestEnvironment:
    """Test loading from environment mappings."""

    def test_defaults(self):
        config = load_pyramid_config_from_env({})

        assert config == PyramidConfig()
        assert config.entry_policy.is_permissive

    def test_overrides(self):
        config = load_pyramid_config_from_env({
            "PYRAMID_STYLE": "Aggressive",
            "MAX_ACCOUNT_EXPOSURE": "0.6",
            "STOP_LOSS_PERCENTAGE": "8",
            "PYRAMID_ENTRY_COOLDOWN_SECONDS": "30",
            "PYRAMID_LEVERAGE_MODE": "adaptive",
        })

        assert config.preset == ConfigPreset.AGGRESSIVE
        assert config.max_account_exposure == 0.6
        assert config.stop_loss_percentage == 8.0
        assert config.entry_policy.cooldown_seconds == 30.0
        assert config.leverage_mode == LeverageMode.ADAPTIVE

    def test_custom_style(self):
        config = load_pyramid_config_from_env({
            "PYRAMID_STYLE": "custom",
            "PYRAMID_MARGIN_PERCENTAGES": "5, 10, 20",
            "MAX_PYRAMID_LEVELS": "3",
        })

        assert config.margin_percentages == (5.0, 10.0, 20.0)
        assert config.max_pyramid_levels == 3

    @pytest.mark.parametrize("environ", [
        {"PYRAMID_STYLE": "yolo"},
        {"PYRAMID_STYLE": "custom"},
        {"PYRAMID_STYLE": "custom", "PYRAMID_MARGIN_PERCENTAGES": "5,10,20"},
        {"PYRAMID_MARGIN_PERCENTAGES": "5,10,20,30"},
        {"MAX_ACCOUNT_EXPOSURE": "lots"},
        {"MAX_PYRAMID_LEVELS": "2.5"},
        {"PYRAMID_LEVERAGE_MODE": "turbo"},
    ])
    def test_invalid_environment(self, environ):
        with pytest.raises(ConfigError):
            load_pyramid_config_from_env(environ)

    def test_service_settings(self):
        settings = load_service_settings_from_env({
            "HYPERLIQUID_USE_TESTNET": "true",
            "HYPERLIQUID_WALLET_ADDRESS": "0xabc",
            "SYNC_INTERVAL_SECONDS": "2",
            "PYRAMID_DB_PATH": "/tmp/p.db",
        })

        assert settings.use_testnet
        assert settings.wallet_address == "0xabc"
        assert settings.sync_interval_seconds == 2.0
        assert settings.risk_interval_seconds == 5.0
        assert settings.db_path == "/tmp/p.db"

    def test_service_settings_reject_bad_interval(self):
        with pytest.raises(ConfigError):
            load_service_settings_from_env({"RISK_INTERVAL_SECONDS": "0"})
