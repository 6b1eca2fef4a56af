"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for ledger configs.
"""

import logging
import os
import tempfile
from datetime import timedelta

import pytest
import yaml

from meter_ledger.config.loader import (
    LedgerConfig,
    default_config,
    load_ledger_config
)
from meter_ledger.core.tariff import DEFAULT_TARIFF_PER_KWH
from meter_ledger.storage.db import DEFAULT_DB_PATH


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        config_data = {
            "database": {"path": "ledger.db"},
            "recalculation": {"undo_window_hours": 12, "large_offset_warning_kwh": 500},
            "tariff": {
                "per_kwh": 1500.0,
                "admin_fee": 2500,
                "tiers": [
                    {"min_nominal": 0, "max_nominal": 100000, "effective_tariff": 1444.70, "label": "R1"},
                ],
            },
            "logging": {"level": "debug"},
        }

        config = load_ledger_config(self._write_config(config_data))

        assert config.database.path == "ledger.db"
        assert config.recalculation.undo_window == timedelta(hours=12)
        assert config.recalculation.large_offset_warning_kwh == 500.0
        assert config.tariff.per_kwh == 1500.0
        assert config.tariff.admin_fee == 2500.0
        assert config.tariff.tiers[0].label == "R1"
        assert config.tariff.tiers[0].max_nominal == 100000.0
        assert config.logging.numeric_level == logging.DEBUG

    def test_missing_sections_use_defaults(self):
        config = load_ledger_config(self._write_config({"logging": {"level": "WARNING"}}))

        assert config.database.path == DEFAULT_DB_PATH
        assert config.recalculation.undo_window == timedelta(hours=24)
        assert config.recalculation.large_offset_warning_kwh is None
        assert config.tariff.per_kwh == DEFAULT_TARIFF_PER_KWH
        assert config.tariff.tiers == ()

    def test_default_config(self):
        config = default_config()
        assert isinstance(config, LedgerConfig)
        assert config.logging.level == "INFO"

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_ledger_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "broken.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("database: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_ledger_config(config_path)

    def test_empty_file(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        with pytest.raises(ValueError, match="empty"):
            load_ledger_config(config_path)

    @pytest.mark.parametrize("config_data, message", [
        ({"unknown": {}}, "Unknown configuration keys"),
        ({"database": {"path": "x.db", "pool": 3}}, "Unknown database keys"),
        ({"database": "x.db"}, "must be a dictionary"),
        ({"recalculation": {"undo_window_hours": "24"}}, "must be a number"),
        ({"recalculation": {"undo_window_hours": True}}, "must be a number"),
        ({"recalculation": {"undo_window_hours": 0}}, "must be > 0"),
        ({"tariff": {"per_kwh": -1}}, "must be > 0"),
        ({"tariff": {"tiers": {"min_nominal": 0}}}, "must be a list"),
        ({"tariff": {"tiers": [{"min_nominal": 0}]}}, "effective_tariff"),
        ({"tariff": {"tiers": [{"effective_tariff": 1000, "rate": 2}]}}, "Unknown keys"),
        ({"logging": {"level": "LOUD"}}, "logging level"),
        (["database"], "must be a mapping"),
    ])
    def test_invalid_configs_rejected(self, config_data, message):
        with pytest.raises(ValueError, match=message):
            load_ledger_config(self._write_config(config_data))
