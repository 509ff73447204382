"""
Notification models.

NotificationEvent is what the pipeline components emit; Notification is the
stored form kept by the notification center with its read state.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict


class NotificationKind(Enum):
    """What happened"""
    NEW = "new"
    CHANGED = "changed"
    COMPLETED = "completed"
    FAILED = "failed"
    INFO = "info"

    @property
    def severity(self) -> str:
        """Backend notification type: success, error or info"""
        if self == NotificationKind.FAILED:
            return "error"
        if self == NotificationKind.INFO:
            return "info"
        return "success"

    @property
    def priority(self) -> str:
        if self in (NotificationKind.FAILED, NotificationKind.NEW, NotificationKind.CHANGED):
            return "high"
        if self == NotificationKind.COMPLETED:
            return "medium"
        return "low"


class NotificationEvent(BaseModel):
    """Event raised by the pipeline for one entity and stage"""
    model_config = ConfigDict(frozen=True)

    # None for events not tied to one entity, e.g. a failed foreground refresh
    entity_id: Optional[str] = None
    stage: Optional[int] = None
    kind: NotificationKind
    count_new: int = Field(default=0, ge=0)
    count_changed: int = Field(default=0, ge=0)
    title: str = ""
    message: str = ""
    entity_name: Optional[str] = None
    changed_keys: Tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=datetime.now)


class Notification(BaseModel):
    """Stored notification with read state"""
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event: NotificationEvent
    read: bool = False

    @property
    def kind(self) -> NotificationKind:
        return self.event.kind

    def to_dict(self) -> Dict[str, Any]:
        data = self.event.model_dump(mode='json')
        data.update({'id': self.id, 'read': self.read})
        return data
