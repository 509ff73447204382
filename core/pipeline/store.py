"""
Owned entity store.

The one place entity records live. Every write goes through
``apply_patch`` or ``replace_all`` and swaps whole immutable records, so a
reader always sees a consistent entity. All methods are synchronous and run
on the event loop thread; no write interleaves with another.
"""

import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Union

from ..models.entities import Entity, StageStatus

logger = logging.getLogger(__name__)

Patch = Union[Entity, Mapping[str, Any], Callable[[Entity], Entity]]
Listener = Callable[[List[Entity]], None]


class EntityStore:
    """Single writer store of entities keyed by id, in backend order"""

    def __init__(self, entities: Optional[Iterable[Entity]] = None):
        self._entities: "OrderedDict[str, Entity]" = OrderedDict()
        self._hidden: Set[str] = set()
        self._listeners: List[Listener] = []
        self._version = 0

        for entity in entities or []:
            self._entities[entity.id] = entity

    @property
    def version(self) -> int:
        """Incremented on every write"""
        return self._version

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def get(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def require(self, entity_id: str) -> Entity:
        """Get an entity or raise KeyError"""
        entity = self._entities.get(entity_id)
        if entity is None:
            raise KeyError(f"Unknown entity: {entity_id}")
        return entity

    def entities(self) -> List[Entity]:
        """All entities, hidden ones included"""
        return list(self._entities.values())

    def visible(self) -> List[Entity]:
        """Entities not soft-removed"""
        return [e for e in self._entities.values() if not e.hidden]

    def any_running(self) -> bool:
        return any(entity.any_running for entity in self._entities.values())

    def apply_patch(self, entity_id: str, patch: Patch) -> Entity:
        """
        Replace one entity record.

        Args:
            entity_id: Entity to update
            patch: a full replacement Entity, a mapping of fields to copy
                over, or a function from the current record to the new one

        Returns:
            The stored record

        Raises:
            KeyError: if the entity is unknown
        """
        current = self.require(entity_id)

        if isinstance(patch, Entity):
            updated = patch
        elif callable(patch):
            updated = patch(current)
        else:
            updated = current.model_copy(update=dict(patch))

        if updated.id != entity_id:
            raise ValueError(f"Patch for {entity_id} produced entity {updated.id}")

        self._entities[entity_id] = updated
        self._changed()
        return updated

    def replace_all(self, entities: Iterable[Entity]) -> List[Entity]:
        """
        Reconcile with a freshly fetched list. Last write wins.

        Result snapshots the fetch does not carry (minimal listings) are kept
        from the local record, as are soft-removal flags. Entities missing
        from the fetch are dropped.
        """
        merged: "OrderedDict[str, Entity]" = OrderedDict()

        for incoming in entities:
            local = self._entities.get(incoming.id)
            update: Dict[str, Any] = {}

            if local is not None:
                if local.results:
                    results = dict(local.results)
                    results.update(incoming.results)
                    update['results'] = results
                update['stages'] = _carry_previous_status(local, incoming)

            # The hidden set is the source of truth for soft removal
            hidden = incoming.id in self._hidden
            if incoming.hidden != hidden:
                update['hidden'] = hidden

            merged[incoming.id] = incoming.model_copy(update=update) if update else incoming

        self._entities = merged
        self._changed()
        return list(merged.values())

    def hide(self, entity_id: str) -> Entity:
        """Soft-remove an entity from listings"""
        self.require(entity_id)
        self._hidden.add(entity_id)
        return self.apply_patch(entity_id, {'hidden': True})

    def unhide(self, entity_id: str) -> Entity:
        self.require(entity_id)
        self._hidden.discard(entity_id)
        return self.apply_patch(entity_id, {'hidden': False})

    @property
    def hidden_ids(self) -> FrozenSet[str]:
        return frozenset(self._hidden)

    def restore_hidden(self, entity_ids: Iterable[str]) -> None:
        """Seed soft-removal flags persisted by an earlier session"""
        self._hidden.update(entity_ids)

        changed = False
        for entity_id in self._hidden:
            entity = self._entities.get(entity_id)
            if entity is not None and not entity.hidden:
                self._entities[entity_id] = entity.model_copy(update={'hidden': True})
                changed = True
        if changed:
            self._changed()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self) -> None:
        self._version += 1
        snapshot = self.entities()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Entity store listener failed: {e}")


def _carry_previous_status(local: Entity, incoming: Entity):
    """Keep the pre-run status of stages that are still running on both sides"""
    stages = []
    for before, after in zip(local.stages, incoming.stages):
        if (after.status == StageStatus.RUNNING
                and before.status == StageStatus.RUNNING
                and after.previous_status is None
                and before.previous_status is not None):
            after = after.model_copy(update={'previous_status': before.previous_status})
        stages.append(after)
    return tuple(stages)
