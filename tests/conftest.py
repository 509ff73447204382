"""
Shared fixtures for stagewatch tests.
"""

from typing import Dict, List, Optional, Sequence

import pytest

from core.models.entities import STAGE_COUNT, Entity, StageResult, StageState, StageStatus
from core.models.normalize import normalize_records
from core.models.notifications import NotificationEvent, NotificationKind


class RecordingSink:
    """Notification sink that keeps every event"""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def emit(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: NotificationKind) -> List[NotificationEvent]:
        return [e for e in self.events if e.kind == kind]


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_entity(
    entity_id: str = "p1",
    statuses: Optional[Sequence[StageStatus]] = None,
    name: Optional[str] = None,
    results: Optional[Dict[int, StageResult]] = None
) -> Entity:
    statuses = list(statuses or [StageStatus.PENDING] * STAGE_COUNT)
    return Entity(
        id=entity_id,
        name=name or f"Product {entity_id}",
        stages=tuple(StageState(status=s) for s in statuses),
        results=results or {},
    )


def build_update(
    regulation: str = "GPSR",
    title: str = "General Product Safety Regulation",
    update_date: str = "2024-12-13",
    description: str = "Applies to all consumer products placed on the EU market.",
    impact: str = "high",
    **extra
) -> dict:
    """Raw terminal-stage item as the backend sends it"""
    item = {
        'regulation': regulation,
        'title': title,
        'update_date': update_date,
        'description': description,
        'impact': impact,
    }
    item.update(extra)
    return item


def build_terminal_result(items: List[dict]) -> StageResult:
    return StageResult(stage=4, records=tuple(normalize_records(items)))


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_entity():
    return build_entity


@pytest.fixture
def make_update():
    return build_update


@pytest.fixture
def make_terminal_result():
    return build_terminal_result
