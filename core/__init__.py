"""
stagewatch core package

Pipeline orchestration and change detection for a five-stage backend
analysis pipeline.
"""

__version__ = "1.0.0"
__author__ = "stagewatch team"

from .models import Entity, StageState, StageStatus, NotificationEvent, MonitorConfig

__all__ = [
    "Entity",
    "StageState",
    "StageStatus",
    "NotificationEvent",
    "MonitorConfig"
]
