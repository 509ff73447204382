"""
Configuration loading and management.

Reads the monitor configuration from JSON, layers environment variable
overrides on top and validates the result.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging

from pydantic import ValidationError

from core.models.config import GlobalSettings, MonitorConfig
from .defaults import ENV_VAR_MAPPING, STRING_ONLY_PATHS, get_default_monitor_config

logger = logging.getLogger(__name__)


class ConfigurationLoader:
    """Load and manage monitor configuration"""

    def __init__(self, settings: Optional[GlobalSettings] = None):
        self.global_settings = settings or GlobalSettings()
        self.config_cache: Dict[str, MonitorConfig] = {}

    @property
    def default_config_file(self) -> Path:
        return self.global_settings.config_file

    def load(self, config_file: Optional[Union[str, Path]] = None) -> MonitorConfig:
        """Load configuration from file (or defaults) with env overrides"""
        config_file = Path(config_file) if config_file else self.default_config_file

        # Check cache first
        cache_key = str(config_file.resolve())
        if cache_key in self.config_cache:
            return self.config_cache[cache_key]

        config_data = get_default_monitor_config()
        if config_file.exists():
            config_data = self._merge(config_data, self._read_file(config_file))

        config_data = self._apply_env_overrides(config_data)

        try:
            config = MonitorConfig.from_dict(config_data)
        except ValidationError as e:
            logger.error(f"Invalid configuration in {config_file}: {e}")
            raise

        self.config_cache[cache_key] = config
        return config

    def _read_file(self, config_file: Path) -> Dict[str, Any]:
        """Read a JSON config file; unreadable files fall back to defaults"""
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load config from {config_file}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.error(f"Config file {config_file} must contain a JSON object")
            return {}
        return data

    def _merge(self, base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge file values over defaults"""
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                base[key] = self._merge(base[key], value)
            else:
                base[key] = value
        return base

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration"""
        for env_var, config_path in ENV_VAR_MAPPING.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                self._set_nested_value(config_data, config_path, env_value)

        return config_data

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: str) -> None:
        """Set nested dictionary value using dot notation path"""
        keys = path.split('.')
        current = data

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        final_key = keys[-1]
        if path in STRING_ONLY_PATHS:
            current[final_key] = value
        else:
            current[final_key] = self._convert_env_value(value)

    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to appropriate type"""
        # Boolean conversion
        if value.lower() in ('true', 'yes', 'on'):
            return True
        elif value.lower() in ('false', 'no', 'off'):
            return False

        # Numeric conversion
        try:
            if '.' in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        # Return as string
        return value

    def save(self, config: MonitorConfig, config_file: Optional[Union[str, Path]] = None) -> bool:
        """Save configuration to disk"""
        config_file = Path(config_file) if config_file else self.default_config_file
        try:
            config_file.parent.mkdir(parents=True, exist_ok=True)

            with open(config_file, 'w', encoding='utf-8') as f:
                json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)

            logger.info(f"Saved configuration to {config_file}")
            self.config_cache[str(config_file.resolve())] = config
            return True

        except (OSError, TypeError) as e:
            logger.error(f"Failed to save config to {config_file}: {e}")
            return False
