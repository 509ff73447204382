"""
PipelineMonitor: wires store, state machine, cache, refresher, scheduler,
optimistic controller and orchestrator into one object.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from core.cache.store import TenantCache, namespaces_from_config
from core.changes.detector import ChangeDetector
from core.client.backend import PipelineBackendClient
from core.models.config import MonitorConfig
from core.models.entities import Entity, StageStatus, validate_stage_index
from core.notifications.center import (
    FanOutSink,
    NotificationCenter,
    NotificationSink,
    RemoteNotificationSink,
)
from core.pipeline.optimistic import OptimisticUpdateController
from core.pipeline.orchestrator import RunReport, SequentialRunOrchestrator
from core.pipeline.state_machine import PipelineStateMachine, next_runnable_stage
from core.pipeline.store import EntityStore
from core.sync.refresher import EntityRefresher
from core.sync.scheduler import FetchWatermark, PollingScheduler

logger = logging.getLogger(__name__)


class PipelineMonitor:
    """
    Client-side controller for one tenant's products.

    Usage:
        async with PipelineMonitor(config) as monitor:
            monitor.start_stage("p1", 0)
            report = await monitor.run_all("p2")
    """

    def __init__(
        self,
        config: MonitorConfig,
        client: Optional[PipelineBackendClient] = None,
        sink: Optional[NotificationSink] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.config = config
        self.tenant_id = config.tenant_id
        self.client = client or PipelineBackendClient(config.backend)

        self.store = EntityStore()
        self.machine = PipelineStateMachine(self.store)

        self.notifications = NotificationCenter(max_kept=config.notifications.max_kept)
        self.sink = FanOutSink(self.notifications)
        self._remote_sink: Optional[RemoteNotificationSink] = None
        if config.notifications.forward_to_backend:
            self._remote_sink = RemoteNotificationSink(self.client, self.tenant_id)
            self.sink.add(self._remote_sink)
        if sink is not None:
            self.sink.add(sink)

        self.cache = TenantCache.from_config(config.cache, clock=clock)
        # One fetch record for every entity-list fetch, polled or explicit
        self.watermark = FetchWatermark()
        self.refresher = EntityRefresher(
            client=self.client,
            store=self.store,
            cache=self.cache,
            namespaces=namespaces_from_config(config.cache),
            tenant_id=self.tenant_id,
            sink=self.sink,
            detector=ChangeDetector(),
            watermark=self.watermark,
        )
        self.controller = OptimisticUpdateController(self.machine, self.sink, refresh=self.refresh)
        self.scheduler = PollingScheduler(
            has_running=self.store.any_running,
            refresh=self.refresher.refresh,
            config=config.polling,
            watermark=self.watermark,
        )
        self.orchestrator = SequentialRunOrchestrator(
            store=self.store,
            controller=self.controller,
            execute_stage=self._execute_stage,
            refresh=self.refresh,
            sink=self.sink,
            config=config.orchestrator,
            sleep=sleep,
            mute_failures=self.refresher.mute_failures,
        )

        self._audit_tasks: Set[asyncio.Task] = set()

    async def __aenter__(self) -> 'PipelineMonitor':
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(self, poll: bool = True) -> List[Entity]:
        """Paint from cache, refresh in background and optionally start polling"""
        entities = await self.refresher.load()
        if poll:
            await self.scheduler.start()
        return entities

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.controller.wait_idle()
        await self.refresher.wait_background()
        if self._audit_tasks:
            await asyncio.gather(*list(self._audit_tasks), return_exceptions=True)
        if self._remote_sink is not None:
            await self._remote_sink.drain()
        self.client.close()

    async def refresh(self, foreground: bool = False) -> bool:
        return await self.refresher.refresh(foreground=foreground)

    def entities(self) -> List[Entity]:
        """Visible entities"""
        return self.store.visible()

    def get(self, entity_id: str) -> Optional[Entity]:
        return self.store.get(entity_id)

    async def _execute_stage(self, entity_id: str, stage: int) -> Any:
        return await self.client.execute_stage(entity_id, stage, self.tenant_id)

    def start_stage(self, entity_id: str, stage: int) -> Optional[asyncio.Task]:
        """
        Optimistically start one stage.

        Raises:
            KeyError: unknown entity
            ValueError: stage outside 0..4
        """
        validate_stage_index(stage)
        entity = self.store.require(entity_id)
        was_completed = entity.status_of(stage) == StageStatus.COMPLETED

        async def effect() -> Any:
            return await self._execute_stage(entity_id, stage)

        task = self.controller.execute(entity_id, stage, effect)
        if task is not None:
            self._audit(
                'step_rerun' if was_completed else 'step_executed',
                entity,
                {'step': stage},
            )
        return task

    def stop_stage(self, entity_id: str, stage: int) -> Optional[asyncio.Task]:
        validate_stage_index(stage)
        self.store.require(entity_id)

        async def effect() -> Any:
            return await self.client.stop_stage(entity_id, stage)

        return self.controller.stop(entity_id, stage, effect)

    def continue_entity(self, entity_id: str) -> Optional[asyncio.Task]:
        """Start the next runnable stage, if any"""
        stage = next_runnable_stage(self.store.require(entity_id))
        if stage is None:
            logger.info(f"Nothing to continue for {entity_id}")
            return None
        return self.start_stage(entity_id, stage)

    async def run_all(self, entity_id: str) -> RunReport:
        return await self.orchestrator.run_all(entity_id)

    async def hide(self, entity_id: str) -> Entity:
        """Soft-remove an entity from listings, for this and later sessions"""
        entity = self.store.hide(entity_id)
        await self.refresher.persist_hidden()
        self._audit('product_deleted', entity, {})
        return entity

    async def unhide(self, entity_id: str) -> Entity:
        """Bring a soft-removed entity back into listings"""
        entity = self.store.unhide(entity_id)
        await self.refresher.persist_hidden()
        return entity

    async def summary(self, force: bool = False) -> Optional[Dict[str, Any]]:
        return await self.refresher.get_summary(force=force)

    async def tenant_info(self, force: bool = False) -> Optional[Dict[str, Any]]:
        return await self.refresher.get_tenant_info(force=force)

    def on_visibility_change(self, visible: bool) -> Optional[asyncio.Task]:
        return self.scheduler.on_visibility_change(visible)

    def _audit(self, action: str, entity: Entity, details: Dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(
            self.client.log_event(action, self.tenant_id, entity.id, entity.display_name, details)
        )
        self._audit_tasks.add(task)
        task.add_done_callback(self._audit_tasks.discard)

    def get_status(self) -> Dict[str, Any]:
        return {
            'tenant_id': self.tenant_id,
            'entities': len(self.store),
            'running': self.store.any_running(),
            'scheduler': self.scheduler.get_status(),
            'controller': self.controller.get_stats(),
            'cache': self.cache.get_stats(),
            'client': self.client.get_stats(),
            'unread_notifications': self.notifications.unread_count,
        }
