"""
Optimistic stage starts with background reconciliation.

A start flips the stage to running locally and returns at once; the
backend call runs as a task. Success triggers a full refresh so server
truth replaces the optimistic state; failure applies the compensating
ServerFailed event to the one stage that was started.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Set

from ..models.entities import stage_name
from ..models.notifications import NotificationEvent, NotificationKind
from ..notifications.center import NotificationSink
from .state_machine import PipelineStateMachine, ServerFailed, Start, StageEvent, Stopped

logger = logging.getLogger(__name__)

Effect = Callable[[], Awaitable[Any]]
Refresh = Callable[[], Awaitable[Any]]


def pending_key(entity_id: str, stage: int) -> str:
    """Idempotency key for one (entity, stage) pair"""
    return f"{entity_id}-step{stage}"


def error_detail(error: BaseException) -> str:
    """Most specific message available for a failed call"""
    detail = getattr(error, 'detail', None)
    return str(detail or error or type(error).__name__)


@dataclass(frozen=True)
class StageCommand:
    """
    One optimistic stage operation.

    ``optimistic`` is applied before the effect runs; ``compensate`` builds
    the event that undoes it if the effect fails.
    """
    entity_id: str
    stage: int
    effect: Effect = field(compare=False)
    optimistic: StageEvent = field(default_factory=Start)

    @property
    def key(self) -> str:
        return pending_key(self.entity_id, self.stage)

    def compensate(self, error: BaseException) -> StageEvent:
        return ServerFailed(reason=error_detail(error))


class OptimisticUpdateController:
    """Starts and stops stages without blocking the caller"""

    def __init__(
        self,
        machine: PipelineStateMachine,
        sink: NotificationSink,
        refresh: Optional[Refresh] = None
    ):
        self.machine = machine
        self.sink = sink
        self.refresh = refresh
        self._pending: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

        # Metrics
        self.started = 0
        self.rejected = 0
        self.failed = 0

    @property
    def pending(self) -> FrozenSet[str]:
        return frozenset(self._pending)

    def is_pending(self, entity_id: str, stage: int) -> bool:
        return pending_key(entity_id, stage) in self._pending

    def execute(
        self,
        entity_id: str,
        stage: int,
        effect: Effect,
        notify_failure: bool = True
    ) -> Optional[asyncio.Task]:
        """
        Optimistically start a stage.

        Must be called from a running event loop. Returns immediately.

        Args:
            entity_id: Entity to act on
            stage: Stage index 0..4
            effect: Coroutine function performing the backend start call
            notify_failure: Emit a failure notification if the effect fails;
                callers that report failures themselves pass False

        Returns:
            The background task, or None if the start was rejected because
            the same stage is already pending or running
        """
        command = StageCommand(entity_id, stage, effect)

        if command.key in self._pending:
            self.rejected += 1
            logger.debug(f"Start of {command.key} ignored, already pending")
            return None

        transition = self.machine.transition(entity_id, stage, command.optimistic)
        if not transition.accepted:
            self.rejected += 1
            logger.debug(f"Start of {command.key} rejected: {transition.rejection.value}")
            return None

        self._pending.add(command.key)
        self.started += 1
        self._emit(command, NotificationKind.INFO, f"{stage_name(stage)} started",
                   f"{stage_name(stage)} is running for {self._entity_name(entity_id)}")

        return self._spawn(self._run(command, notify_failure))

    def stop(self, entity_id: str, stage: int, effect: Effect) -> Optional[asyncio.Task]:
        """
        Stop a running stage.

        The local status leaves running immediately; the backend stop call
        is advisory and a refresh follows whatever its outcome.

        Returns:
            The background task, or None if the stage was not running
        """
        transition = self.machine.transition(entity_id, stage, Stopped())
        if not transition.accepted:
            logger.debug(f"Stop of {pending_key(entity_id, stage)} rejected: {transition.rejection.value}")
            return None

        command = StageCommand(entity_id, stage, effect, optimistic=Stopped())
        return self._spawn(self._run_stop(command))

    async def _run(self, command: StageCommand, notify_failure: bool = True) -> bool:
        try:
            await command.effect()
        except Exception as e:
            self.failed += 1
            logger.warning(f"Background start of {command.key} failed: {e}")
            self.machine.transition(command.entity_id, command.stage, command.compensate(e))
            if notify_failure:
                self._emit(
                    command,
                    NotificationKind.FAILED,
                    f"{stage_name(command.stage)} failed",
                    f"{stage_name(command.stage)} could not start for "
                    f"{self._entity_name(command.entity_id)}: {error_detail(e)}",
                )
            return False
        else:
            await self._refresh()
            return True
        finally:
            self._pending.discard(command.key)

    async def _run_stop(self, command: StageCommand) -> bool:
        try:
            await command.effect()
            return True
        except Exception as e:
            logger.warning(f"Stop of {command.key} failed: {e}")
            self._emit(
                command,
                NotificationKind.FAILED,
                f"Could not stop {stage_name(command.stage)}",
                error_detail(e),
            )
            return False
        finally:
            await self._refresh()

    async def _refresh(self) -> None:
        if self.refresh is None:
            return
        try:
            await self.refresh()
        except Exception as e:
            logger.warning(f"Refresh after stage command failed: {e}")

    def _spawn(self, coro: Awaitable[bool]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every background command to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _entity_name(self, entity_id: str) -> str:
        entity = self.machine.store.get(entity_id)
        return entity.display_name if entity else entity_id

    def _emit(self, command: StageCommand, kind: NotificationKind, title: str, message: str) -> None:
        self.sink.emit(NotificationEvent(
            entity_id=command.entity_id,
            stage=command.stage,
            kind=kind,
            title=title,
            message=message,
            entity_name=self._entity_name(command.entity_id),
        ))

    def get_stats(self) -> Dict[str, Any]:
        return {
            'pending': sorted(self._pending),
            'started': self.started,
            'rejected': self.rejected,
            'failed': self.failed,
        }
