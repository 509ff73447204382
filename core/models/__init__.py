"""
Core data models for stagewatch

Pydantic models for entities, stage state, notifications and configuration.
"""

from .entities import (
    STAGE_COUNT,
    STAGE_NAMES,
    TERMINAL_STAGE,
    Entity,
    ProgressEntry,
    ResultRecord,
    StageProgress,
    StageResult,
    StageState,
    StageStatus,
    stage_name,
)
from .notifications import Notification, NotificationEvent, NotificationKind
from .config import (
    BackendConfig,
    CacheConfig,
    GlobalSettings,
    MonitorConfig,
    NotificationConfig,
    OrchestratorConfig,
    PollingConfig,
)

__all__ = [
    # Entities
    "STAGE_COUNT",
    "STAGE_NAMES",
    "TERMINAL_STAGE",
    "Entity",
    "ProgressEntry",
    "ResultRecord",
    "StageProgress",
    "StageResult",
    "StageState",
    "StageStatus",
    "stage_name",

    # Notifications
    "Notification",
    "NotificationEvent",
    "NotificationKind",

    # Configuration
    "BackendConfig",
    "CacheConfig",
    "GlobalSettings",
    "MonitorConfig",
    "NotificationConfig",
    "OrchestratorConfig",
    "PollingConfig",
]
