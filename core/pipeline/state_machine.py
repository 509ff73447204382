"""
Per-stage state machine.

    PENDING ──Start──▶ RUNNING ──ServerCompleted──▶ COMPLETED
    ERROR ────Start──▶ RUNNING ──ServerFailed─────▶ ERROR
    COMPLETED─Start──▶ RUNNING ──Stopped──────────▶ COMPLETED | ERROR

Stages never advance on their own; starting the next stage is always an
explicit Start from a user action or the sequential orchestrator.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from ..models.entities import (
    STAGE_COUNT,
    Entity,
    StageResult,
    StageState,
    StageStatus,
    validate_stage_index,
)
from .store import EntityStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Start:
    """User or orchestrator asked the stage to run"""


@dataclass(frozen=True)
class ServerCompleted:
    """Backend reports the stage finished"""
    payload: Optional[StageResult] = None


@dataclass(frozen=True)
class ServerFailed:
    """Backend reports the stage failed, or the start call was rejected"""
    reason: str = ""


@dataclass(frozen=True)
class Stopped:
    """User stopped the stage"""
    reason: str = "stopped"


StageEvent = Union[Start, ServerCompleted, ServerFailed, Stopped]


class Rejection(Enum):
    """Why a transition was refused"""
    ALREADY_RUNNING = "already_running"
    NOT_RUNNING = "not_running"
    UNKNOWN_ENTITY = "unknown_entity"


@dataclass(frozen=True)
class TransitionResult:
    """Resulting stage state and whether the event was accepted"""
    state: Optional[StageState]
    accepted: bool
    rejection: Optional[Rejection] = None

    @classmethod
    def rejected(cls, state: Optional[StageState], reason: Rejection) -> 'TransitionResult':
        return cls(state=state, accepted=False, rejection=reason)


def apply_event(state: StageState, event: StageEvent) -> TransitionResult:
    """
    Pure transition function.

    Args:
        state: Current stage state
        event: Event to apply

    Returns:
        TransitionResult; on rejection ``state`` is the unchanged input
    """
    if isinstance(event, Start):
        if state.status == StageStatus.RUNNING:
            return TransitionResult.rejected(state, Rejection.ALREADY_RUNNING)
        return TransitionResult(
            state=StageState(status=StageStatus.RUNNING, previous_status=state.status),
            accepted=True,
        )

    if state.status != StageStatus.RUNNING:
        return TransitionResult.rejected(state, Rejection.NOT_RUNNING)

    if isinstance(event, ServerCompleted):
        new_state = StageState(status=StageStatus.COMPLETED, progress=state.progress)
    elif isinstance(event, ServerFailed):
        new_state = StageState(
            status=StageStatus.ERROR,
            progress=state.progress,
            error=event.reason or None,
        )
    elif isinstance(event, Stopped):
        if state.previous_status == StageStatus.COMPLETED:
            new_state = StageState(status=StageStatus.COMPLETED)
        else:
            new_state = StageState(status=StageStatus.ERROR, error=event.reason)
    else:
        raise TypeError(f"Unknown stage event: {event!r}")

    return TransitionResult(state=new_state, accepted=True)


def can_execute(entity: Entity, stage: int) -> bool:
    """
    Whether a stage may be started from the "continue" action.

    Stage 0 runs when pending or errored; any later stage additionally
    needs its predecessor completed.
    """
    validate_stage_index(stage)
    if entity.status_of(stage) not in (StageStatus.PENDING, StageStatus.ERROR):
        return False
    return stage == 0 or entity.status_of(stage - 1) == StageStatus.COMPLETED


def next_runnable_stage(entity: Entity) -> Optional[int]:
    """First stage that ``can_execute``, or None"""
    for stage in range(STAGE_COUNT):
        if can_execute(entity, stage):
            return stage
    return None


class PipelineStateMachine:
    """Applies stage events to entities held in an EntityStore"""

    def __init__(self, store: EntityStore):
        self.store = store

    def transition(self, entity_id: str, stage: int, event: StageEvent) -> TransitionResult:
        """
        Apply an event to one stage of one entity.

        Accepted transitions are written to the store immediately. A
        ServerCompleted payload is stored as the stage's result.
        """
        validate_stage_index(stage)
        entity = self.store.get(entity_id)
        if entity is None:
            logger.warning(f"Ignoring {type(event).__name__} for unknown entity {entity_id}")
            return TransitionResult.rejected(None, Rejection.UNKNOWN_ENTITY)

        result = apply_event(entity.stage(stage), event)
        if not result.accepted:
            logger.debug(
                f"Rejected {type(event).__name__} for {entity_id} stage {stage}: "
                f"{result.rejection.value}"
            )
            return result

        updated = entity.with_stage(stage, result.state)
        if isinstance(event, ServerCompleted) and event.payload is not None:
            updated = updated.with_result(stage, event.payload)
        self.store.apply_patch(entity_id, updated)

        logger.debug(
            f"{entity_id} stage {stage}: {entity.status_of(stage).value} -> {result.state.status.value}"
        )
        return result
