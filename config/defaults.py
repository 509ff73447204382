"""
Default configuration values for stagewatch.

Centralized defaults that can be overridden by environment variables or config files.
"""

from pathlib import Path
from typing import Any, Dict
import copy

# Global default settings
DEFAULT_SETTINGS = {
    "tenant_id": "default",

    # Pipeline backend
    "backend": {
        "base_url": "http://localhost:8000",
        "api_key": None,
        "user_token": None,
        "timeout": 120.0
    },

    # Polling scheduler
    "polling": {
        "tick_interval": 5.0,
        "debounce_seconds": 2.0
    },

    # Tenant cache (TTLs in seconds)
    "cache": {
        "enabled": True,
        "cache_dir": str(Path.home() / ".cache" / "stagewatch"),
        "entity_list_ttl": 300.0,
        "terminal_results_ttl": 1800.0,
        "summary_ttl": 600.0,
        "tenant_metadata_ttl": 1800.0,
        "hidden_entities_ttl": 31536000.0
    },

    # Sequential runs: 120 attempts x 5s is about ten minutes per stage
    "orchestrator": {
        "poll_interval": 5.0,
        "max_attempts": 120,
        "skip_completed": True
    },

    "notifications": {
        "max_kept": 50,
        "forward_to_backend": False
    }
}

# Environment variable mappings
ENV_VAR_MAPPING = {
    'STAGEWATCH_TENANT_ID': 'tenant_id',
    'STAGEWATCH_BACKEND_URL': 'backend.base_url',
    'STAGEWATCH_API_KEY': 'backend.api_key',
    'STAGEWATCH_USER_TOKEN': 'backend.user_token',
    'STAGEWATCH_TIMEOUT': 'backend.timeout',
    'STAGEWATCH_TICK_INTERVAL': 'polling.tick_interval',
    'STAGEWATCH_DEBOUNCE_SECONDS': 'polling.debounce_seconds',
    'STAGEWATCH_CACHE_ENABLED': 'cache.enabled',
    'STAGEWATCH_CACHE_DIR': 'cache.cache_dir',
    'STAGEWATCH_POLL_INTERVAL': 'orchestrator.poll_interval',
    'STAGEWATCH_MAX_ATTEMPTS': 'orchestrator.max_attempts',
    'STAGEWATCH_SKIP_COMPLETED': 'orchestrator.skip_completed',
    'STAGEWATCH_FORWARD_NOTIFICATIONS': 'notifications.forward_to_backend'
}

# Values that must stay strings even when they look numeric or boolean
STRING_ONLY_PATHS = {'tenant_id', 'backend.api_key', 'backend.user_token', 'cache.cache_dir'}


def get_default_monitor_config() -> Dict[str, Any]:
    """Get a fresh copy of the default monitor configuration"""
    return copy.deepcopy(DEFAULT_SETTINGS)
