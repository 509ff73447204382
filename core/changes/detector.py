"""
Change detection between successive terminal-stage snapshots.

Compares the result list observed at one completion of the terminal stage
with the list stored at the previous completion and classifies each item
as new, changed or unchanged by its change key.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Set, Union

from ..models.entities import ResultRecord, StageResult
from ..models.normalize import normalize_record
from .fingerprint import ChangeKey

logger = logging.getLogger(__name__)

RecordLike = Union[ResultRecord, Mapping[str, Any]]
Snapshot = Union[StageResult, Iterable[RecordLike], None]


@dataclass
class DiffResult:
    """Outcome of comparing two snapshots"""
    new_count: int = 0
    changed_count: int = 0
    changed_keys: Set[str] = field(default_factory=set)
    new_keys: Set[str] = field(default_factory=set)

    @property
    def has_changes(self) -> bool:
        return self.new_count > 0 or self.changed_count > 0

    @property
    def total(self) -> int:
        return self.new_count + self.changed_count

    def summary(self) -> str:
        """Short human readable description"""
        parts = []
        if self.new_count:
            parts.append(f"{self.new_count} new")
        if self.changed_count:
            parts.append(f"{self.changed_count} changed")
        return ", ".join(parts) if parts else "no changes"


def _records(snapshot: Snapshot):
    if snapshot is None:
        return []
    if isinstance(snapshot, StageResult):
        return list(snapshot.records)
    return [
        item if isinstance(item, ResultRecord) else normalize_record(item)
        for item in snapshot
    ]


class ChangeDetector:
    """
    Diffs terminal-stage snapshots.

    Only description and impact are treated as mutable content; every other
    field is part of the item's identity through its change key.
    """

    MUTABLE_FIELDS = ('description', 'impact')

    def diff(self, previous: Snapshot, current: Snapshot) -> DiffResult:
        """
        Compare two snapshots.

        Args:
            previous: snapshot stored at the previous completion, or None
            current: freshly fetched snapshot

        Returns:
            DiffResult; all zero when there is no previous snapshot, since a
            first sighting is not a change
        """
        previous_records = _records(previous)
        if not previous_records:
            logger.debug("No previous snapshot, skipping diff")
            return DiffResult()

        previous_by_key: Dict[str, ResultRecord] = {
            ChangeKey.generate(record): record for record in previous_records
        }

        result = DiffResult()
        for record in _records(current):
            key = ChangeKey.generate(record)
            before = previous_by_key.get(key)

            if before is None:
                result.new_count += 1
                result.new_keys.add(key)
                result.changed_keys.add(key)
            elif self._content_changed(before, record):
                result.changed_count += 1
                result.changed_keys.add(key)

        logger.debug(
            f"Snapshot diff: {result.new_count} new, {result.changed_count} changed "
            f"({len(previous_records)} previous items)"
        )
        return result

    def _content_changed(self, before: ResultRecord, after: ResultRecord) -> bool:
        return any(
            getattr(before, name) != getattr(after, name)
            for name in self.MUTABLE_FIELDS
        )


def diff_snapshots(previous: Snapshot, current: Snapshot) -> DiffResult:
    """Module-level convenience wrapper around ChangeDetector.diff"""
    return ChangeDetector().diff(previous, current)
