"""
Sequential "run all" orchestration.

Runs stages 0 through 4 in order. Each stage is a (start, poll until
terminal) pair executed by a generic step runner; polling refreshes the
authoritative entity state on a fixed interval up to a bounded number of
attempts. A stage ending in error, or not ending in time, aborts the run
with exactly one failure notification. Stages already run are never
rolled back.
"""

import asyncio
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, ContextManager, List, Optional, Set

from ..models.config import OrchestratorConfig
from ..models.entities import STAGE_COUNT, StageStatus, stage_name
from ..models.notifications import NotificationEvent, NotificationKind
from ..notifications.center import NotificationSink
from .optimistic import OptimisticUpdateController
from .store import EntityStore

logger = logging.getLogger(__name__)


class StepOutcome(Enum):
    """How one step of a run ended"""
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ERROR = "error"
    TIMEOUT = "timeout"
    NOT_STARTED = "not_started"

    @property
    def advances(self) -> bool:
        return self in (StepOutcome.COMPLETED, StepOutcome.SKIPPED)


@dataclass
class StepReport:
    stage: int
    outcome: StepOutcome
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class RunStep:
    """One stage of a sequential run"""
    stage: int
    start: Callable[[], Awaitable[Optional[StepOutcome]]]
    poll_until_terminal: Callable[[], Awaitable[StepReport]]


@dataclass
class RunReport:
    """Outcome of a whole run"""
    entity_id: str
    steps: List[StepReport] = field(default_factory=list)
    rejected: bool = False

    @property
    def success(self) -> bool:
        return (not self.rejected
                and len(self.steps) == STAGE_COUNT
                and all(step.outcome.advances for step in self.steps))

    @property
    def failed_step(self) -> Optional[StepReport]:
        for step in self.steps:
            if not step.outcome.advances:
                return step
        return None


class StepRunner:
    """Executes steps in order, stopping at the first that does not advance"""

    async def run(self, steps: List[RunStep]) -> List[StepReport]:
        reports: List[StepReport] = []
        for step in steps:
            early = await step.start()
            if early is not None:
                report = StepReport(stage=step.stage, outcome=early)
            else:
                report = await step.poll_until_terminal()
            reports.append(report)

            if not report.outcome.advances:
                break
        return reports


class SequentialRunOrchestrator:
    """Runs every stage of one entity, one after the other"""

    def __init__(
        self,
        store: EntityStore,
        controller: OptimisticUpdateController,
        execute_stage: Callable[[str, int], Awaitable[Any]],
        refresh: Callable[[], Awaitable[Any]],
        sink: NotificationSink,
        config: Optional[OrchestratorConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        mute_failures: Optional[Callable[[str], ContextManager]] = None
    ):
        """
        Initialize orchestrator.

        Args:
            store: Entity store read after every refresh
            controller: Used to start each stage optimistically
            execute_stage: Coroutine function ``(entity_id, stage)`` calling the backend
            refresh: Coroutine function performing a full refresh
            sink: Receives the run's single aggregate notification
            config: Poll interval, attempt bound and skip policy
            sleep: Awaitable delay, injectable for tests
            mute_failures: Context manager factory suppressing other per-stage
                failure notifications for the entity while the run is active
        """
        self.store = store
        self.controller = controller
        self.execute_stage = execute_stage
        self.refresh = refresh
        self.sink = sink
        self.config = config or OrchestratorConfig()
        self.sleep = sleep
        self.mute_failures = mute_failures
        self.runner = StepRunner()
        self._active: Set[str] = set()

    def is_running(self, entity_id: str) -> bool:
        return entity_id in self._active

    async def run_all(self, entity_id: str) -> RunReport:
        """
        Run stages 0..4 for an entity.

        Raises:
            KeyError: if the entity is unknown
        """
        entity = self.store.require(entity_id)

        if entity_id in self._active:
            logger.warning(f"Run for {entity_id} already in progress")
            return RunReport(entity_id=entity_id, rejected=True)

        self._active.add(entity_id)
        mute = self.mute_failures(entity_id) if self.mute_failures else nullcontext()
        logger.info(f"Starting sequential run for {entity.display_name}")

        try:
            with mute:
                steps = [self._build_step(entity_id, stage) for stage in range(STAGE_COUNT)]
                report = RunReport(entity_id=entity_id, steps=await self.runner.run(steps))
        finally:
            self._active.discard(entity_id)

        self._notify(report)
        return report

    def _build_step(self, entity_id: str, stage: int) -> RunStep:
        async def start() -> Optional[StepOutcome]:
            return await self._start_stage(entity_id, stage)

        async def poll() -> StepReport:
            return await self._poll_until_terminal(entity_id, stage)

        return RunStep(stage=stage, start=start, poll_until_terminal=poll)

    async def _start_stage(self, entity_id: str, stage: int) -> Optional[StepOutcome]:
        """Start a stage; returns an outcome only when polling is pointless"""
        status = self.store.require(entity_id).status_of(stage)

        if status == StageStatus.COMPLETED and self.config.skip_completed:
            logger.info(f"Skipping completed stage {stage} of {entity_id}")
            return StepOutcome.SKIPPED
        if status == StageStatus.RUNNING:
            logger.info(f"Stage {stage} of {entity_id} already running, waiting for it")
            return None

        async def effect() -> Any:
            return await self.execute_stage(entity_id, stage)

        task = self.controller.execute(entity_id, stage, effect, notify_failure=False)
        if task is None:
            # Already pending elsewhere; wait on it like a running stage
            if self.controller.is_pending(entity_id, stage):
                return None
            return StepOutcome.NOT_STARTED

        started = await task
        if not started:
            return StepOutcome.ERROR
        return None

    async def _poll_until_terminal(self, entity_id: str, stage: int) -> StepReport:
        for attempt in range(1, self.config.max_attempts + 1):
            try:
                await self.refresh()
            except Exception as e:
                logger.warning(f"Refresh during run of {entity_id} failed: {e}")

            state = self.store.require(entity_id).stage(stage)
            if state.status == StageStatus.COMPLETED:
                return StepReport(stage, StepOutcome.COMPLETED, attempts=attempt)
            if state.status == StageStatus.ERROR:
                return StepReport(stage, StepOutcome.ERROR, attempts=attempt, error=state.error)

            if attempt < self.config.max_attempts:
                await self.sleep(self.config.poll_interval)

        logger.warning(
            f"Stage {stage} of {entity_id} not finished after {self.config.max_attempts} attempts"
        )
        return StepReport(stage, StepOutcome.TIMEOUT, attempts=self.config.max_attempts)

    def _notify(self, report: RunReport) -> None:
        entity = self.store.get(report.entity_id)
        name = entity.display_name if entity else report.entity_id
        failed = report.failed_step

        if report.rejected:
            return

        if failed is None:
            logger.info(f"Sequential run for {name} completed")
            self.sink.emit(NotificationEvent(
                entity_id=report.entity_id,
                kind=NotificationKind.COMPLETED,
                title="Pipeline completed",
                message=f"All stages completed for {name}",
                entity_name=name,
            ))
            return

        if failed.outcome == StepOutcome.TIMEOUT:
            reason = f"timed out after {self.config.timeout_seconds:.0f}s"
        elif failed.outcome == StepOutcome.NOT_STARTED:
            reason = "could not be started"
        else:
            reason = f"failed: {failed.error}" if failed.error else "failed"

        logger.warning(f"Sequential run for {name} aborted at stage {failed.stage} ({reason})")
        self.sink.emit(NotificationEvent(
            entity_id=report.entity_id,
            stage=failed.stage,
            kind=NotificationKind.FAILED,
            title="Pipeline run stopped",
            message=f"{stage_name(failed.stage)} {reason} for {name}",
            entity_name=name,
        ))
