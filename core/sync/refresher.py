"""
Entity refresh and reconciliation.

A refresh fetches the minimal entity list, swaps it into the store (last
write wins), writes it to the tenant cache and turns observed stage
transitions into notifications. When the terminal stage is seen to
complete, its full output is fetched and diffed against the snapshot
stored at its previous completion.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Set

from ..cache.store import (
    ENTITY_LIST,
    HIDDEN_ENTITIES,
    SUMMARY,
    TENANT_METADATA,
    TERMINAL_RESULTS,
    CacheNamespace,
    TenantCache,
)
from ..changes.detector import ChangeDetector, DiffResult
from ..client.backend import PipelineBackendClient
from ..models.entities import TERMINAL_STAGE, Entity, StageResult, StageStatus, stage_name
from ..models.notifications import NotificationEvent, NotificationKind
from ..notifications.center import NotificationSink
from ..pipeline.store import EntityStore
from .scheduler import FetchWatermark

logger = logging.getLogger(__name__)


def _parse_entities(data: Any) -> List[Entity]:
    return [Entity.model_validate(item) for item in data]


class EntityRefresher:
    """Keeps the entity store in line with the backend"""

    def __init__(
        self,
        client: PipelineBackendClient,
        store: EntityStore,
        cache: TenantCache,
        namespaces: Dict[str, CacheNamespace],
        tenant_id: str,
        sink: NotificationSink,
        detector: Optional[ChangeDetector] = None,
        watermark: Optional[FetchWatermark] = None
    ):
        self.client = client
        self.store = store
        self.cache = cache
        self.namespaces = namespaces
        self.tenant_id = tenant_id
        self.sink = sink
        self.detector = detector or ChangeDetector()
        # Shared with the polling scheduler so its debounce sees every fetch
        self.watermark = watermark or FetchWatermark()

        self._muted: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self._hidden_restored = False
        self.last_error: Optional[str] = None

    @contextmanager
    def mute_failures(self, entity_id: str) -> Iterator[None]:
        """Suppress per-stage failure notifications for one entity"""
        self._muted.add(entity_id)
        try:
            yield
        finally:
            self._muted.discard(entity_id)

    async def load(self) -> List[Entity]:
        """
        Paint from cache, then refresh in the background.

        Returns:
            Entities now in the store; cached ones if the cache had any
        """
        await self.restore_hidden()
        cached = await self.cache.load(
            self.namespaces[ENTITY_LIST], self.tenant_id, parse=_parse_entities
        )
        if cached:
            self.store.replace_all(cached)
            logger.info(f"Painted {len(cached)} entities from cache")

        task = asyncio.get_running_loop().create_task(self.refresh(foreground=True))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return self.store.entities()

    async def wait_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def restore_hidden(self) -> None:
        """Seed the store with entity ids hidden in earlier sessions"""
        self._hidden_restored = True
        hidden = await self.cache.load(self.namespaces[HIDDEN_ENTITIES], self.tenant_id)
        if hidden:
            self.store.restore_hidden(str(entity_id) for entity_id in hidden)
            logger.debug(f"Restored {len(hidden)} hidden entities")

    async def persist_hidden(self) -> None:
        """Write the current hidden ids to the tenant cache"""
        await self.cache.store(
            self.namespaces[HIDDEN_ENTITIES], sorted(self.store.hidden_ids), self.tenant_id
        )

    async def refresh(self, foreground: bool = False) -> bool:
        """
        Fetch and reconcile the entity list.

        Failures keep the previous state. They are logged, and surfaced as a
        notification only when the refresh was user-visible. Every attempt,
        failed or not, moves the shared fetch watermark.

        Returns:
            True if fresh data was applied
        """
        if not self._hidden_restored:
            await self.restore_hidden()

        with self.watermark.fetching():
            return await self._refresh(foreground)

    async def _refresh(self, foreground: bool) -> bool:
        try:
            fetched = await self.client.list_entities(self.tenant_id, minimal=True)
        except Exception as e:
            self.last_error = str(e)
            logger.warning(f"Entity refresh failed: {e}")
            if foreground:
                self.sink.emit(NotificationEvent(
                    kind=NotificationKind.FAILED,
                    title="Refresh failed",
                    message=f"Could not load products: {getattr(e, 'detail', None) or e}",
                ))
            return False

        self.last_error = None
        previous = {entity.id: entity for entity in self.store.entities()}
        reconciled = self.store.replace_all(fetched)

        await self.cache.store(
            self.namespaces[ENTITY_LIST],
            [entity.model_dump(mode='json') for entity in reconciled],
            self.tenant_id
        )

        for entity in reconciled:
            before = previous.get(entity.id)
            if before is not None:
                await self._handle_transitions(before, entity)

        logger.debug(f"Refreshed {len(reconciled)} entities")
        return True

    async def _handle_transitions(self, before: Entity, after: Entity) -> None:
        for stage, (old, new) in enumerate(zip(before.stages, after.stages)):
            if old.status != StageStatus.RUNNING or new.status == StageStatus.RUNNING:
                continue

            if new.status == StageStatus.COMPLETED:
                self._emit(after, stage, NotificationKind.COMPLETED,
                           f"{stage_name(stage)} completed",
                           f"{stage_name(stage)} finished for {after.display_name}")
                if stage == TERMINAL_STAGE:
                    await self.check_terminal_changes(after, before.result(TERMINAL_STAGE))

            elif new.status == StageStatus.ERROR:
                if after.id in self._muted:
                    logger.debug(f"Failure of {after.id} stage {stage} muted during run")
                    continue
                reason = f": {new.error}" if new.error else ""
                self._emit(after, stage, NotificationKind.FAILED,
                           f"{stage_name(stage)} failed",
                           f"{stage_name(stage)} failed for {after.display_name}{reason}")

    async def check_terminal_changes(
        self,
        entity: Entity,
        previous: Optional[StageResult] = None
    ) -> Optional[DiffResult]:
        """
        Fetch terminal-stage output, diff it against the last stored
        snapshot and store the new snapshot.

        Returns:
            The diff, or None if the output could not be fetched
        """
        namespace = self.namespaces[TERMINAL_RESULTS]
        if previous is None:
            previous = await self.cache.load(
                namespace, self.tenant_id, suffix=entity.id, parse=StageResult.model_validate
            )

        try:
            fresh = await self.client.get_stage_detail(entity.id, TERMINAL_STAGE, self.tenant_id)
        except Exception as e:
            logger.warning(f"Failed to fetch terminal results for {entity.id}: {e}")
            return None
        if fresh is None:
            return None

        diff = self.detector.diff(previous, fresh)

        if entity.id in self.store:
            self.store.apply_patch(entity.id, lambda current: current.with_result(TERMINAL_STAGE, fresh))
        await self.cache.store(namespace, fresh.model_dump(mode='json'), self.tenant_id, suffix=entity.id)

        if diff.has_changes:
            kind = NotificationKind.NEW if diff.new_count else NotificationKind.CHANGED
            self.sink.emit(NotificationEvent(
                entity_id=entity.id,
                stage=TERMINAL_STAGE,
                kind=kind,
                count_new=diff.new_count,
                count_changed=diff.changed_count,
                title=f"Compliance updates for {entity.display_name}",
                message=diff.summary(),
                entity_name=entity.display_name,
                changed_keys=tuple(sorted(diff.changed_keys)),
            ))
        logger.info(f"Terminal results for {entity.id}: {diff.summary()}")
        return diff

    async def get_summary(self, force: bool = False) -> Optional[Dict[str, Any]]:
        """Dashboard summary, served from cache while fresh"""
        return await self._cached_fetch(self.namespaces[SUMMARY], self.client.get_summary, force)

    async def get_tenant_info(self, force: bool = False) -> Optional[Dict[str, Any]]:
        """Tenant metadata, served from cache while fresh"""
        return await self._cached_fetch(self.namespaces[TENANT_METADATA], self.client.get_tenant_info, force)

    async def _cached_fetch(self, namespace: CacheNamespace, fetch, force: bool) -> Optional[Dict[str, Any]]:
        if not force:
            cached = await self.cache.load(namespace, self.tenant_id)
            if cached is not None:
                return cached
        try:
            data = await fetch(self.tenant_id)
        except Exception as e:
            logger.warning(f"Failed to fetch {namespace.key}: {e}")
            return None
        await self.cache.store(namespace, data, self.tenant_id)
        return data

    def _emit(self, entity: Entity, stage: int, kind: NotificationKind, title: str, message: str) -> None:
        self.sink.emit(NotificationEvent(
            entity_id=entity.id,
            stage=stage,
            kind=kind,
            title=title,
            message=message,
            entity_name=entity.display_name,
        ))
