"""
Configuration management and loading.

Handles the ledger's YAML settings: database location, undo window, tariff
and log level.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from meter_ledger.core.tariff import DEFAULT_TARIFF_PER_KWH, TariffConfig, TariffTier
from meter_ledger.storage.db import DEFAULT_DB_PATH

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class DatabaseConfig:
    """Where events and audits are stored."""
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class RecalculationConfig:
    """Cascade settings."""
    undo_window_hours: float = 24.0
    large_offset_warning_kwh: Optional[float] = None

    def __post_init__(self):
        """Validate recalculation values are positive."""
        if self.undo_window_hours <= 0:
            raise ValueError("undo_window_hours must be > 0")
        if self.large_offset_warning_kwh is not None and self.large_offset_warning_kwh <= 0:
            raise ValueError("large_offset_warning_kwh must be > 0")

    @property
    def undo_window(self) -> timedelta:
        return timedelta(hours=self.undo_window_hours)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"

    def __post_init__(self):
        if self.level not in LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {sorted(LOG_LEVELS)}")

    @property
    def numeric_level(self) -> int:
        return getattr(logging, self.level)


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    recalculation: RecalculationConfig = field(default_factory=RecalculationConfig)
    tariff: TariffConfig = field(default_factory=TariffConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def default_config() -> LedgerConfig:
    """Configuration used when no file is given."""
    return LedgerConfig()


def load_ledger_config(path: str) -> LedgerConfig:
    """Load and validate ledger configuration from a YAML file.

    Every section is optional; unknown keys and wrong types are rejected so
    a typo never silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'database', 'recalculation', 'tariff', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database_data = _section(raw_config, 'database', {'path'})
    database = DatabaseConfig(
        path=_string(database_data.get('path', DEFAULT_DB_PATH), 'database.path')
    )

    recalc_data = _section(raw_config, 'recalculation', {'undo_window_hours', 'large_offset_warning_kwh'})
    warning = recalc_data.get('large_offset_warning_kwh')
    recalculation = RecalculationConfig(
        undo_window_hours=_number(recalc_data.get('undo_window_hours', 24), 'recalculation.undo_window_hours'),
        large_offset_warning_kwh=(
            None if warning is None
            else _number(warning, 'recalculation.large_offset_warning_kwh')
        ),
    )

    tariff = _parse_tariff(_section(raw_config, 'tariff', {'per_kwh', 'admin_fee', 'tiers'}))

    logging_data = _section(raw_config, 'logging', {'level'})
    level = _string(logging_data.get('level', 'INFO'), 'logging.level').upper()

    return LedgerConfig(
        database=database,
        recalculation=recalculation,
        tariff=tariff,
        logging=LoggingConfig(level=level),
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return an optional mapping section after checking its keys."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _string(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{path}' must be a non-empty string")
    return value


def _parse_tariff(data: Dict[str, Any]) -> TariffConfig:
    """Parse and validate the tariff section.

    Args:
        data: Tariff configuration data

    Returns:
        Validated TariffConfig

    Raises:
        ValueError: If configuration is invalid
    """
    per_kwh = _number(data.get('per_kwh', DEFAULT_TARIFF_PER_KWH), 'tariff.per_kwh')
    admin_fee = _number(data.get('admin_fee', 0), 'tariff.admin_fee')

    tiers_data = data.get('tiers') or []
    if not isinstance(tiers_data, list):
        raise ValueError("'tariff.tiers' must be a list")

    tiers = []
    allowed_tier_keys = {'min_nominal', 'max_nominal', 'effective_tariff', 'label'}
    for index, tier_data in enumerate(tiers_data):
        path = f"tariff.tiers[{index}]"
        if not isinstance(tier_data, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown_keys = set(tier_data.keys()) - allowed_tier_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        if 'effective_tariff' not in tier_data:
            raise ValueError(f"Missing required 'effective_tariff' in {path}")

        max_nominal = tier_data.get('max_nominal')
        label = tier_data.get('label')
        if label is not None and not isinstance(label, str):
            raise ValueError(f"'{path}.label' must be a string")
        tiers.append(TariffTier(
            min_nominal=_number(tier_data.get('min_nominal', 0), f"{path}.min_nominal"),
            max_nominal=None if max_nominal is None else _number(max_nominal, f"{path}.max_nominal"),
            effective_tariff=_number(tier_data['effective_tariff'], f"{path}.effective_tariff"),
            label=label,
        ))

    return TariffConfig(per_kwh=per_kwh, admin_fee=admin_fee, tiers=tuple(tiers))
