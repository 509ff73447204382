"""
Unit tests for terminal-stage snapshot diffing.
"""

import pytest

from core.changes.detector import ChangeDetector, DiffResult, diff_snapshots
from core.changes.fingerprint import fingerprint


class TestDiffResult:
    """Test DiffResult helpers"""

    def test_empty(self):
        result = DiffResult()
        assert result.has_changes is False
        assert result.total == 0
        assert result.summary() == "no changes"

    def test_summary(self):
        result = DiffResult(new_count=2, changed_count=1)
        assert result.has_changes is True
        assert result.summary() == "2 new, 1 changed"


class TestChangeDetector:
    """Test ChangeDetector.diff"""

    @pytest.fixture
    def detector(self):
        return ChangeDetector()

    def test_first_sighting_is_not_new(self, detector, make_update):
        """No previous snapshot means all zero, whatever the current one holds"""
        current = [make_update(regulation=f"R{i}") for i in range(3)]

        result = detector.diff(None, current)

        assert result.new_count == 0
        assert result.changed_count == 0
        assert result.changed_keys == set()

    def test_empty_previous_is_first_sighting(self, detector, make_update):
        result = detector.diff([], [make_update()])
        assert result == DiffResult()

    def test_identical_snapshots(self, detector, make_update):
        """Diffing a snapshot against itself yields nothing"""
        snapshot = [make_update(regulation="A"), make_update(regulation="B")]

        result = detector.diff(snapshot, list(snapshot))

        assert result.new_count == 0
        assert result.changed_count == 0
        assert result.changed_keys == set()

    def test_new_item(self, detector, make_update):
        """An item whose key is not in the previous snapshot is new"""
        a = make_update(regulation="A")
        b = make_update(regulation="B")

        result = detector.diff([a], [a, b])

        assert result.new_count == 1
        assert result.changed_count == 0
        assert result.changed_keys == {fingerprint(b)}
        assert result.new_keys == {fingerprint(b)}

    def test_changed_impact(self, detector, make_update):
        """Same key with different impact counts as changed"""
        before = make_update(impact="medium")
        after = make_update(impact="high")

        result = detector.diff([before], [after])

        assert result.new_count == 0
        assert result.changed_count == 1
        assert result.changed_keys == {fingerprint(after)}

    def test_changed_description_beyond_prefix(self, detector, make_update):
        """Description edits past the key prefix keep the key but count as changed"""
        prefix = "p" * 100
        before = make_update(description=prefix + " old tail")
        after = make_update(description=prefix + " new tail")

        result = detector.diff([before], [after])

        assert result.new_count == 0
        assert result.changed_count == 1

    def test_changed_short_description(self, detector):
        """Items describing themselves under 'desc' are compared on it"""
        prefix = "d" * 100
        before = {'regulation': 'A', 'title': 'T', 'desc': prefix + " old"}
        after = {'regulation': 'A', 'title': 'T', 'desc': prefix + " new"}

        result = detector.diff([before], [after])

        assert result.new_count == 0
        assert result.changed_count == 1

    def test_removed_items_ignored(self, detector, make_update):
        """Items that disappear are neither new nor changed"""
        a = make_update(regulation="A")
        b = make_update(regulation="B")

        result = detector.diff([a, b], [a])

        assert result.has_changes is False

    def test_stage_result_snapshots(self, detector, make_update, make_terminal_result):
        """StageResult inputs are diffed by their records"""
        previous = make_terminal_result([make_update(regulation="A")])
        current = make_terminal_result([make_update(regulation="A"), make_update(regulation="C")])

        result = detector.diff(previous, current)

        assert result.new_count == 1

    def test_new_item_scenario(self, make_update):
        """Previous {A, B}, current {A, B, C} with B's impact edited"""
        a = make_update(regulation="A")
        b = make_update(regulation="B", impact="low")
        b_edited = make_update(regulation="B", impact="high")
        c = make_update(regulation="C")

        result = diff_snapshots([a, b], [a, b_edited, c])

        assert result.new_count == 1
        assert result.changed_count == 1
        assert result.changed_keys == {fingerprint(b_edited), fingerprint(c)}
