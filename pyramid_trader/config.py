"""
Pyramid configuration.

Presets are a closed set of named variants validated at construction time.
CUSTOM carries raw margin/exit arrays supplied by the operator.

Environment loading mirrors the deployment variables:
    PYRAMID_STYLE, MAX_PYRAMID_LEVELS, MAX_ACCOUNT_EXPOSURE,
    STOP_LOSS_PERCENTAGE, TRAILING_STOP_PERCENTAGE, ...
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

from dotenv import load_dotenv

from .errors import ConfigError


class ConfigPreset(Enum):
    """Named pyramid styles."""
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"
    CUSTOM = "custom"


class LeverageMode(Enum):
    """How entry leverage is chosen."""
    FIXED = "fixed"        # config.fixed_leverage, capped by tier maximum
    ADAPTIVE = "adaptive"  # LeverageManager recommendation, capped by tier


# (margin percentages per level, exit percentages, fixed leverage)
PRESET_TABLE: Dict[ConfigPreset, Tuple[Tuple[float, ...], Tuple[float, ...], float]] = {
    ConfigPreset.CONSERVATIVE: ((5.0, 10.0, 15.0, 20.0), (50.0, 100.0), 5.0),
    ConfigPreset.MODERATE: ((10.0, 15.0, 20.0, 25.0), (50.0, 100.0), 5.0),
    ConfigPreset.AGGRESSIVE: ((15.0, 20.0, 25.0, 30.0), (50.0, 100.0), 5.0),
}


@dataclass(frozen=True)
class EntryPolicy:
    """Gate for stacking another pyramid level.

    Both checks are disabled by default, so every buy signal adds a level
    (which can degenerate into averaging down). Enable either to require
    a favorable move or a minimum gap between entries.
    """
    min_favorable_move_pct: float = 0.0  # price must be >= last entry * (1 + pct/100)
    cooldown_seconds: float = 0.0        # min seconds since last entry

    @property
    def is_permissive(self) -> bool:
        return self.min_favorable_move_pct <= 0 and self.cooldown_seconds <= 0

    def validate(self):
        if self.min_favorable_move_pct < 0:
            raise ConfigError(f"min_favorable_move_pct cannot be negative: {self.min_favorable_move_pct}")
        if self.cooldown_seconds < 0:
            raise ConfigError(f"cooldown_seconds cannot be negative: {self.cooldown_seconds}")


@dataclass(frozen=True)
class PyramidConfig:
    """Process-wide pyramid configuration. Immutable once loaded."""
    margin_percentages: Tuple[float, ...] = PRESET_TABLE[ConfigPreset.MODERATE][0]
    exit_percentages: Tuple[float, ...] = PRESET_TABLE[ConfigPreset.MODERATE][1]
    fixed_leverage: float = 5.0
    max_pyramid_levels: int = 4
    max_account_exposure: float = 0.70
    stop_loss_percentage: float = 10.0
    trailing_stop_percentage: float = 5.0

    entry_policy: EntryPolicy = field(default_factory=EntryPolicy)
    leverage_mode: LeverageMode = LeverageMode.FIXED
    slippage_tolerance: float = 0.001     # limit price offset from market
    min_account_value: float = 100.0
    entry_price_tolerance_pct: float = 0.25  # sync overwrites avg entry beyond this
    preset: ConfigPreset = ConfigPreset.MODERATE

    def __post_init__(self):
        # Accept lists from callers; store tuples so the config stays hashable.
        object.__setattr__(self, "margin_percentages", tuple(float(p) for p in self.margin_percentages))
        object.__setattr__(self, "exit_percentages", tuple(float(p) for p in self.exit_percentages))
        self.validate()

    def validate(self):
        """Raise ConfigError on malformed percentages or limits."""
        if not self.margin_percentages:
            raise ConfigError("margin_percentages cannot be empty")
        if self.max_pyramid_levels < 1:
            raise ConfigError(f"max_pyramid_levels must be >= 1: {self.max_pyramid_levels}")
        if len(self.margin_percentages) < self.max_pyramid_levels:
            raise ConfigError(
                f"margin_percentages has {len(self.margin_percentages)} levels, "
                f"max_pyramid_levels is {self.max_pyramid_levels}"
            )
        for pct in self.margin_percentages:
            if not 0 < pct <= 100:
                raise ConfigError(f"margin percentage out of range (0, 100]: {pct}")
        for prev, nxt in zip(self.margin_percentages, self.margin_percentages[1:]):
            if nxt < prev:
                raise ConfigError(f"margin_percentages must be non-decreasing: {self.margin_percentages}")
        if not self.exit_percentages:
            raise ConfigError("exit_percentages cannot be empty")
        for pct in self.exit_percentages:
            if not 0 < pct <= 100:
                raise ConfigError(f"exit percentage out of range (0, 100]: {pct}")
        if self.fixed_leverage <= 0:
            raise ConfigError(f"fixed_leverage must be positive: {self.fixed_leverage}")
        if not 0 < self.max_account_exposure <= 1:
            raise ConfigError(f"max_account_exposure must be in (0, 1]: {self.max_account_exposure}")
        if not 0 < self.stop_loss_percentage < 100:
            raise ConfigError(f"stop_loss_percentage must be in (0, 100): {self.stop_loss_percentage}")
        if self.trailing_stop_percentage < 0:
            raise ConfigError(f"trailing_stop_percentage cannot be negative: {self.trailing_stop_percentage}")
        if not 0 <= self.slippage_tolerance < 0.1:
            raise ConfigError(f"slippage_tolerance must be in [0, 0.1): {self.slippage_tolerance}")
        if self.min_account_value < 0:
            raise ConfigError(f"min_account_value cannot be negative: {self.min_account_value}")
        self.entry_policy.validate()

    @property
    def first_exit_fraction(self) -> float:
        return self.exit_percentages[0] / 100.0

    def margin_percentage_for_level(self, level: int) -> float:
        """Margin percentage for the entry that moves level -> level + 1."""
        if level < 0 or level >= self.max_pyramid_levels:
            raise ConfigError(f"no margin percentage for level {level}")
        return self.margin_percentages[level]

    @classmethod
    def from_preset(cls, preset: ConfigPreset, **overrides) -> 'PyramidConfig':
        """Build a config from a named preset.

        CUSTOM requires margin_percentages in overrides.
        """
        if not isinstance(preset, ConfigPreset):
            raise ConfigError(f"unknown preset: {preset!r}")
        if preset == ConfigPreset.CUSTOM:
            if "margin_percentages" not in overrides:
                raise ConfigError("custom preset requires margin_percentages")
            overrides.setdefault("exit_percentages", (50.0, 100.0))
            overrides.setdefault("fixed_leverage", 5.0)
        else:
            margins, exits, leverage = PRESET_TABLE[preset]
            overrides.setdefault("margin_percentages", margins)
            overrides.setdefault("exit_percentages", exits)
            overrides.setdefault("fixed_leverage", leverage)
        return cls(preset=preset, **overrides)

    @classmethod
    def custom(
        cls,
        margin_percentages: Sequence[float],
        exit_percentages: Sequence[float] = (50.0, 100.0),
        fixed_leverage: float = 5.0,
        **overrides
    ) -> 'PyramidConfig':
        return cls.from_preset(
            ConfigPreset.CUSTOM,
            margin_percentages=tuple(margin_percentages),
            exit_percentages=tuple(exit_percentages),
            fixed_leverage=fixed_leverage,
            **overrides
        )

    def with_entry_policy(self, policy: EntryPolicy) -> 'PyramidConfig':
        return replace(self, entry_policy=policy)


@dataclass
class ServiceSettings:
    """Runtime settings for the service process."""
    sync_interval_seconds: float = 5.0
    risk_interval_seconds: float = 5.0
    health_interval_seconds: float = 30.0
    exchange_timeout_seconds: float = 10.0
    use_testnet: bool = False
    wallet_address: Optional[str] = None
    private_key: Optional[str] = None
    db_path: str = "pyramid_state.db"


def parse_preset(value: str) -> ConfigPreset:
    try:
        return ConfigPreset(value.strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in ConfigPreset)
        raise ConfigError(f"unknown PYRAMID_STYLE {value!r} (expected one of: {valid})")


def _parse_float(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _parse_percent_list(name: str, raw: str) -> Tuple[float, ...]:
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    if not parts:
        raise ConfigError(f"{name} is empty")
    return tuple(_parse_float(name, p) for p in parts)


def _env_bool(environ, name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_pyramid_config_from_env(environ=None, dotenv: bool = True) -> PyramidConfig:
    """Build PyramidConfig from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)
        dotenv: Load a .env file into os.environ first

    Raises:
        ConfigError: On unknown preset or malformed numbers
    """
    if environ is None:
        if dotenv:
            load_dotenv()
        environ = os.environ

    preset = parse_preset(environ.get("PYRAMID_STYLE", ConfigPreset.MODERATE.value))
    overrides = {}

    if "PYRAMID_MARGIN_PERCENTAGES" in environ:
        if preset != ConfigPreset.CUSTOM:
            raise ConfigError("PYRAMID_MARGIN_PERCENTAGES requires PYRAMID_STYLE=custom")
        overrides["margin_percentages"] = _parse_percent_list(
            "PYRAMID_MARGIN_PERCENTAGES", environ["PYRAMID_MARGIN_PERCENTAGES"]
        )
    if "PYRAMID_EXIT_PERCENTAGES" in environ:
        overrides["exit_percentages"] = _parse_percent_list(
            "PYRAMID_EXIT_PERCENTAGES", environ["PYRAMID_EXIT_PERCENTAGES"]
        )

    float_fields = {
        "PYRAMID_FIXED_LEVERAGE": "fixed_leverage",
        "MAX_ACCOUNT_EXPOSURE": "max_account_exposure",
        "STOP_LOSS_PERCENTAGE": "stop_loss_percentage",
        "TRAILING_STOP_PERCENTAGE": "trailing_stop_percentage",
    }
    for env_name, attr in float_fields.items():
        if env_name in environ:
            overrides[attr] = _parse_float(env_name, environ[env_name])

    if "MAX_PYRAMID_LEVELS" in environ:
        levels = _parse_float("MAX_PYRAMID_LEVELS", environ["MAX_PYRAMID_LEVELS"])
        if levels != int(levels):
            raise ConfigError(f"MAX_PYRAMID_LEVELS must be an integer: {levels}")
        overrides["max_pyramid_levels"] = int(levels)

    overrides["entry_policy"] = EntryPolicy(
        min_favorable_move_pct=_parse_float(
            "PYRAMID_MIN_FAVORABLE_MOVE_PCT", environ.get("PYRAMID_MIN_FAVORABLE_MOVE_PCT", "0")
        ),
        cooldown_seconds=_parse_float(
            "PYRAMID_ENTRY_COOLDOWN_SECONDS", environ.get("PYRAMID_ENTRY_COOLDOWN_SECONDS", "0")
        ),
    )

    if "PYRAMID_LEVERAGE_MODE" in environ:
        try:
            overrides["leverage_mode"] = LeverageMode(environ["PYRAMID_LEVERAGE_MODE"].strip().lower())
        except ValueError:
            raise ConfigError(f"unknown PYRAMID_LEVERAGE_MODE {environ['PYRAMID_LEVERAGE_MODE']!r}")

    if preset == ConfigPreset.CUSTOM and "margin_percentages" not in overrides:
        raise ConfigError("PYRAMID_STYLE=custom requires PYRAMID_MARGIN_PERCENTAGES")

    return PyramidConfig.from_preset(preset, **overrides)


def load_service_settings_from_env(environ=None) -> ServiceSettings:
    """Build ServiceSettings from environment variables."""
    if environ is None:
        environ = os.environ
    settings = ServiceSettings(
        use_testnet=_env_bool(environ, "HYPERLIQUID_USE_TESTNET", False),
        wallet_address=environ.get("HYPERLIQUID_WALLET_ADDRESS"),
        private_key=environ.get("HYPERLIQUID_PRIVATE_KEY"),
        db_path=environ.get("PYRAMID_DB_PATH", ServiceSettings.db_path),
    )
    intervals = {
        "SYNC_INTERVAL_SECONDS": "sync_interval_seconds",
        "RISK_INTERVAL_SECONDS": "risk_interval_seconds",
        "HEALTH_INTERVAL_SECONDS": "health_interval_seconds",
        "EXCHANGE_TIMEOUT_SECONDS": "exchange_timeout_seconds",
    }
    for env_name, attr in intervals.items():
        if env_name in environ:
            value = _parse_float(env_name, environ[env_name])
            if value <= 0:
                raise ConfigError(f"{env_name} must be positive: {value}")
            setattr(settings, attr, value)
    return settings
