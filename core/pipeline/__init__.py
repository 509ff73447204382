"""
Pipeline state, optimistic control and sequential runs.
"""

from .store import EntityStore
from .state_machine import (
    PipelineStateMachine,
    Rejection,
    ServerCompleted,
    ServerFailed,
    Start,
    Stopped,
    TransitionResult,
    apply_event,
    can_execute,
    next_runnable_stage,
)
from .optimistic import OptimisticUpdateController, StageCommand, pending_key
from .orchestrator import (
    RunReport,
    RunStep,
    SequentialRunOrchestrator,
    StepOutcome,
    StepReport,
    StepRunner,
)

__all__ = [
    "EntityStore",
    "PipelineStateMachine",
    "Rejection",
    "ServerCompleted",
    "ServerFailed",
    "Start",
    "Stopped",
    "TransitionResult",
    "apply_event",
    "can_execute",
    "next_runnable_stage",
    "OptimisticUpdateController",
    "StageCommand",
    "pending_key",
    "RunReport",
    "RunStep",
    "SequentialRunOrchestrator",
    "StepOutcome",
    "StepReport",
    "StepRunner"
]
