"""
Core pipeline models for stagewatch.

Defines products (entities), their five stage records, progress snapshots
and the canonical result record every backend payload is normalized into.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict, field_validator


STAGE_COUNT = 5
TERMINAL_STAGE = STAGE_COUNT - 1

STAGE_NAMES: Dict[int, str] = {
    0: "Product Decomposition",
    1: "Compliance Assessment",
    2: "Identify Compliance Elements",
    3: "Generate Compliance Descriptions",
    4: "Track Compliance Updates",
}


class StageStatus(Enum):
    """Lifecycle status of a single pipeline stage"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """Completed and error are the only states a run can end in"""
        return self in (StageStatus.COMPLETED, StageStatus.ERROR)


def stage_name(stage: int) -> str:
    """Human readable stage name"""
    return STAGE_NAMES.get(stage, f"Step {stage}")


def validate_stage_index(stage: int) -> int:
    """Raise ValueError for anything outside 0..4"""
    if not isinstance(stage, int) or isinstance(stage, bool) or not 0 <= stage < STAGE_COUNT:
        raise ValueError(f"Stage must be an integer in 0..{TERMINAL_STAGE}, got {stage!r}")
    return stage


class ProgressEntry(BaseModel):
    """One line of a stage's progress history"""
    model_config = ConfigDict(frozen=True)

    message: str
    timestamp: Optional[datetime] = None


class StageProgress(BaseModel):
    """Progress snapshot reported by the backend for a running stage"""
    model_config = ConfigDict(frozen=True)

    percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    current_label: Optional[str] = None
    history: Tuple[ProgressEntry, ...] = ()

    @field_validator('percentage', mode='before')
    @classmethod
    def clamp_percentage(cls, v: Any) -> float:
        """Backends occasionally overshoot; clamp into 0..100"""
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, min(100.0, value))


class StageState(BaseModel):
    """State of one stage of one entity"""
    model_config = ConfigDict(frozen=True)

    status: StageStatus = StageStatus.PENDING
    progress: Optional[StageProgress] = None
    error: Optional[str] = None
    # Status held before the current run started; set by Start only
    previous_status: Optional[StageStatus] = None

    @property
    def is_running(self) -> bool:
        return self.status == StageStatus.RUNNING


class ResultRecord(BaseModel):
    """
    Canonical form of a single item in a stage's result list.

    Backend payloads name the same fields differently depending on the
    stage (``regulation`` vs ``name``, ``update_date`` vs ``date``); they are
    folded into these fields once, at ingestion.
    """
    model_config = ConfigDict(frozen=True)

    name: str = ""
    title: str = ""
    date: str = ""
    description: str = ""
    impact: str = ""
    extra: Dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten back into a JSON-friendly mapping"""
        data = dict(self.extra)
        data.update({
            'name': self.name,
            'title': self.title,
            'date': self.date,
            'description': self.description,
            'impact': self.impact,
        })
        return data


class StageResult(BaseModel):
    """Materialized output of one stage"""
    model_config = ConfigDict(frozen=True)

    stage: int
    records: Tuple[ResultRecord, ...] = ()
    text: Optional[str] = None
    fetched_at: Optional[datetime] = None

    @field_validator('stage')
    @classmethod
    def validate_stage(cls, v: int) -> int:
        return validate_stage_index(v)

    @property
    def is_empty(self) -> bool:
        return not self.records and not self.text

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stage': self.stage,
            'records': [record.to_dict() for record in self.records],
            'text': self.text,
            'fetched_at': self.fetched_at.isoformat() if self.fetched_at else None,
        }


def _default_stages() -> Tuple[StageState, ...]:
    return tuple(StageState() for _ in range(STAGE_COUNT))


class Entity(BaseModel):
    """
    A product moving through the five-stage pipeline.

    Instances are immutable; every change produces a new record which the
    entity store swaps in whole.
    """
    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
    )

    id: str = Field(..., min_length=1)
    name: str = ""
    description: Optional[str] = None
    product_type: Optional[str] = None
    markets: Tuple[str, ...] = ()

    stages: Tuple[StageState, ...] = Field(default_factory=_default_stages)
    results: Dict[int, StageResult] = Field(default_factory=dict)

    # Soft removal: hidden from listings, never dropped from the store
    hidden: bool = False

    @field_validator('stages')
    @classmethod
    def validate_stages(cls, v: Tuple[StageState, ...]) -> Tuple[StageState, ...]:
        """Exactly five stage records, index 0..4"""
        if len(v) != STAGE_COUNT:
            raise ValueError(f'Entity must have exactly {STAGE_COUNT} stages, got {len(v)}')
        return v

    @field_validator('results')
    @classmethod
    def validate_results(cls, v: Dict[int, StageResult]) -> Dict[int, StageResult]:
        for stage in v:
            validate_stage_index(stage)
        return v

    def stage(self, index: int) -> StageState:
        """Get state of a stage"""
        return self.stages[validate_stage_index(index)]

    def status_of(self, index: int) -> StageStatus:
        return self.stage(index).status

    def result(self, index: int) -> Optional[StageResult]:
        return self.results.get(validate_stage_index(index))

    def with_stage(self, index: int, state: StageState) -> 'Entity':
        """Copy of this entity with one stage replaced"""
        validate_stage_index(index)
        stages = list(self.stages)
        stages[index] = state
        return self.model_copy(update={'stages': tuple(stages)})

    def with_result(self, index: int, result: StageResult) -> 'Entity':
        """Copy of this entity with one stage result replaced"""
        validate_stage_index(index)
        results = dict(self.results)
        results[index] = result
        return self.model_copy(update={'results': results})

    @property
    def any_running(self) -> bool:
        return any(state.is_running for state in self.stages)

    @property
    def running_stages(self) -> Tuple[int, ...]:
        return tuple(i for i, state in enumerate(self.stages) if state.is_running)

    @property
    def display_name(self) -> str:
        return self.name or self.id
