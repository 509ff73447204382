"""
Configuration models for stagewatch.

Handles backend connection, polling cadence, cache TTLs, orchestration
bounds and notification retention.
"""

from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendConfig(BaseModel):
    """Pipeline backend connection configuration"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    # Connection settings
    base_url: str = "http://localhost:8000"
    api_key: Optional[str] = None
    user_token: Optional[str] = None
    timeout: float = Field(default=120.0, ge=1.0, le=600.0)  # long-running stage calls

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate backend URL format"""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Backend URL must start with http:// or https://')
        return v.rstrip('/')


class PollingConfig(BaseModel):
    """Polling scheduler configuration"""
    model_config = ConfigDict(validate_assignment=True)

    tick_interval: float = Field(default=5.0, gt=0.0, le=300.0)
    debounce_seconds: float = Field(default=2.0, ge=0.0, le=300.0)


class CacheConfig(BaseModel):
    """Tenant-scoped local cache configuration"""
    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = True
    cache_dir: Path = Field(default_factory=lambda: Path.home() / ".cache" / "stagewatch")

    # TTLs in seconds, one per namespace
    entity_list_ttl: float = Field(default=300.0, gt=0.0)
    terminal_results_ttl: float = Field(default=1800.0, gt=0.0)
    summary_ttl: float = Field(default=600.0, gt=0.0)
    tenant_metadata_ttl: float = Field(default=1800.0, gt=0.0)
    # Soft-removal flags are user decisions; keep them for a year
    hidden_entities_ttl: float = Field(default=31536000.0, gt=0.0)


class OrchestratorConfig(BaseModel):
    """Sequential run configuration"""
    model_config = ConfigDict(validate_assignment=True)

    poll_interval: float = Field(default=5.0, gt=0.0, le=300.0)
    max_attempts: int = Field(default=120, ge=1, le=10000)
    skip_completed: bool = True

    @property
    def timeout_seconds(self) -> float:
        return self.poll_interval * self.max_attempts


class NotificationConfig(BaseModel):
    """Notification retention and forwarding"""
    model_config = ConfigDict(validate_assignment=True)

    max_kept: int = Field(default=50, ge=1, le=1000)
    forward_to_backend: bool = False


class MonitorConfig(BaseModel):
    """Complete monitor configuration"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    tenant_id: str = "default"
    backend: BackendConfig = Field(default_factory=BackendConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    @field_validator('tenant_id')
    @classmethod
    def validate_tenant_id(cls, v: str) -> str:
        """Tenant ids are used in cache paths and query strings"""
        if not v:
            raise ValueError('Tenant id cannot be empty')
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        data = self.model_dump()
        data['cache']['cache_dir'] = str(data['cache']['cache_dir'])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MonitorConfig':
        """Create from dictionary"""
        if 'cache' in data and 'cache_dir' in data['cache']:
            data['cache']['cache_dir'] = Path(data['cache']['cache_dir'])
        return cls(**data)


class GlobalSettings(BaseSettings):
    """Global application settings with environment variable support"""
    model_config = SettingsConfigDict(
        env_prefix="STAGEWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    global_config_dir: Path = Field(
        default_factory=lambda: Path.home() / ".stagewatch"
    )

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_to_file: bool = False

    @property
    def config_file(self) -> Path:
        """Get monitor configuration file path"""
        return self.global_config_dir / "config.json"

    def get_log_file(self) -> Optional[Path]:
        """Get log file path if logging to file is enabled"""
        if not self.log_to_file:
            return None
        log_dir = self.global_config_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir / "stagewatch.log"
