"""
Unit tests for configuration loader functionality.

Tests defaults, file merging, environment overrides, validation and saving.
"""

import json
import os
import pytest
import tempfile
from pathlib import Path
from unittest.mock import patch

from pydantic import ValidationError

from config.defaults import DEFAULT_SETTINGS, ENV_VAR_MAPPING, get_default_monitor_config
from config.loader import ConfigurationLoader
from core.models.config import GlobalSettings, MonitorConfig


class TestConfigurationLoader:
    """Test ConfigurationLoader functionality"""

    def setup_method(self):
        """Setup test environment"""
        self.temp_dir = tempfile.mkdtemp()
        self.temp_path = Path(self.temp_dir)
        self.settings = GlobalSettings(global_config_dir=self.temp_path / "global")
        self.loader = ConfigurationLoader(self.settings)

    def teardown_method(self):
        """Cleanup test environment"""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_config(self, data, name="config.json"):
        config_file = self.temp_path / name
        with open(config_file, 'w') as f:
            json.dump(data, f)
        return config_file

    def test_defaults_without_file(self):
        """Missing config file yields the defaults"""
        with patch.dict(os.environ, {}, clear=True):
            config = self.loader.load(self.temp_path / "missing.json")

        assert isinstance(config, MonitorConfig)
        assert config.tenant_id == "default"
        assert config.polling.tick_interval == 5.0
        assert config.orchestrator.max_attempts == 120
        assert config.cache.summary_ttl == 600.0

    def test_default_config_file_location(self):
        assert self.loader.default_config_file == self.temp_path / "global" / "config.json"

    def test_file_merges_over_defaults(self):
        config_file = self.write_config({
            "tenant_id": "acme",
            "backend": {"base_url": "https://api.acme.test/"},
            "orchestrator": {"max_attempts": 10},
        })

        with patch.dict(os.environ, {}, clear=True):
            config = self.loader.load(config_file)

        assert config.tenant_id == "acme"
        assert config.backend.base_url == "https://api.acme.test"
        assert config.backend.timeout == 120.0
        assert config.orchestrator.max_attempts == 10
        assert config.orchestrator.poll_interval == 5.0

    def test_invalid_json_falls_back_to_defaults(self):
        config_file = self.temp_path / "broken.json"
        config_file.write_text("{not json")

        with patch.dict(os.environ, {}, clear=True):
            config = self.loader.load(config_file)

        assert config.tenant_id == "default"

    def test_invalid_values_raise(self):
        config_file = self.write_config({"backend": {"base_url": "ftp://nope"}})

        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValidationError):
                self.loader.load(config_file)

    def test_environment_overrides(self):
        """Environment variables win over file values"""
        config_file = self.write_config({"tenant_id": "from-file"})
        env = {
            'STAGEWATCH_TENANT_ID': '12345',
            'STAGEWATCH_API_KEY': 'true',
            'STAGEWATCH_MAX_ATTEMPTS': '1',
            'STAGEWATCH_POLL_INTERVAL': '0.5',
            'STAGEWATCH_CACHE_ENABLED': 'off',
        }

        with patch.dict(os.environ, env, clear=True):
            config = self.loader.load(config_file)

        # String-only paths are not converted
        assert config.tenant_id == "12345"
        assert config.backend.api_key == "true"
        assert config.orchestrator.max_attempts == 1
        assert config.orchestrator.poll_interval == 0.5
        assert config.cache.enabled is False

    def test_load_is_cached(self):
        config_file = self.write_config({"tenant_id": "acme"})

        with patch.dict(os.environ, {}, clear=True):
            first = self.loader.load(config_file)
            second = self.loader.load(config_file)

        assert first is second

    def test_convert_env_value(self):
        assert self.loader._convert_env_value("yes") is True
        assert self.loader._convert_env_value("False") is False
        assert self.loader._convert_env_value("42") == 42
        assert self.loader._convert_env_value("2.5") == 2.5
        assert self.loader._convert_env_value("hello") == "hello"

    def test_save_and_reload(self):
        config = MonitorConfig(tenant_id="acme")
        config.cache.cache_dir = self.temp_path / "cache"
        target = self.temp_path / "saved" / "config.json"

        assert self.loader.save(config, target) is True

        with open(target) as f:
            data = json.load(f)
        assert data["tenant_id"] == "acme"
        assert data["cache"]["cache_dir"] == str(self.temp_path / "cache")

        with patch.dict(os.environ, {}, clear=True):
            reloaded = ConfigurationLoader(self.settings).load(target)
        assert reloaded.cache.cache_dir == self.temp_path / "cache"


class TestDefaults:
    """Test default configuration values"""

    def test_defaults_validate(self):
        config = MonitorConfig.from_dict(get_default_monitor_config())
        assert config.notifications.max_kept == 50

    def test_defaults_are_copied(self):
        data = get_default_monitor_config()
        data["polling"]["tick_interval"] = 99
        assert DEFAULT_SETTINGS["polling"]["tick_interval"] == 5.0

    def test_env_mapping_prefix(self):
        assert all(name.startswith("STAGEWATCH_") for name in ENV_VAR_MAPPING)

    def test_orchestrator_timeout(self):
        config = MonitorConfig()
        assert config.orchestrator.timeout_seconds == 600.0
