"""
Tests for optimistic stage starts and stops.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock

from core.client.backend import BackendError
from core.models.entities import StageStatus
from core.models.notifications import NotificationKind
from core.pipeline.optimistic import OptimisticUpdateController, StageCommand, pending_key
from core.pipeline.state_machine import PipelineStateMachine, ServerFailed
from core.pipeline.store import EntityStore

P, R, C, E = StageStatus.PENDING, StageStatus.RUNNING, StageStatus.COMPLETED, StageStatus.ERROR


class TestStageCommand:
    """Test command helpers"""

    def test_key(self):
        assert pending_key("abc", 3) == "abc-step3"
        assert StageCommand("abc", 3, AsyncMock()).key == "abc-step3"

    def test_compensation_carries_detail(self):
        command = StageCommand("abc", 1, AsyncMock())
        event = command.compensate(BackendError("boom", status_code=500, detail="worker crashed"))
        assert event == ServerFailed(reason="worker crashed")


class TestOptimisticUpdateController:
    """Test OptimisticUpdateController.execute and stop"""

    @pytest.fixture
    def store(self, make_entity):
        return EntityStore([make_entity("p1"), make_entity("p2", statuses=[C, C, P, P, P])])

    @pytest.fixture
    def refresh(self):
        return AsyncMock(return_value=True)

    @pytest.fixture
    def controller(self, store, sink, refresh):
        return OptimisticUpdateController(PipelineStateMachine(store), sink, refresh=refresh)

    @pytest.mark.asyncio
    async def test_start_is_synchronous(self, controller, store, sink):
        """Status flips and the info notification is out before the effect runs"""
        gate = asyncio.Event()

        async def effect():
            await gate.wait()

        task = controller.execute("p1", 0, effect)

        assert task is not None
        assert store.get("p1").status_of(0) == R
        assert controller.is_pending("p1", 0)
        assert [e.kind for e in sink.events] == [NotificationKind.INFO]

        gate.set()
        assert await task is True

    @pytest.mark.asyncio
    async def test_success_triggers_refresh_and_clears_guard(self, controller, refresh):
        effect = AsyncMock(return_value={"ok": True})

        task = controller.execute("p1", 0, effect)
        result = await task

        assert result is True
        effect.assert_awaited_once()
        refresh.assert_awaited_once()
        assert controller.pending == frozenset()

    @pytest.mark.asyncio
    async def test_duplicate_start_rejected(self, controller, store):
        """Invoking execute twice before the first resolves starts once"""
        gate = asyncio.Event()
        calls = []

        async def effect():
            calls.append(1)
            await gate.wait()

        first = controller.execute("p1", 0, effect)
        second = controller.execute("p1", 0, effect)

        assert first is not None
        assert second is None
        assert store.get("p1").status_of(0) == R

        gate.set()
        await first
        assert calls == [1]
        assert controller.rejected == 1

    @pytest.mark.asyncio
    async def test_guard_cleared_after_completion(self, controller, store):
        """A later start of the same pair is accepted once the first settles"""
        task = controller.execute("p1", 0, AsyncMock())
        await task

        # Server truth reconciles the stage out of running
        store.apply_patch("p1", lambda e: e.with_stage(0, e.stage(0).model_copy(update={"status": C})))

        assert controller.execute("p1", 0, AsyncMock()) is not None
        await controller.wait_idle()

    @pytest.mark.asyncio
    async def test_failure_marks_only_target_stage(self, controller, store, sink, refresh):
        """Failure applies ServerFailed to the target and leaves siblings alone"""
        before = store.get("p2")
        effect = AsyncMock(side_effect=BackendError("500", status_code=500, detail="Stage 2 crashed"))

        result = await controller.execute("p2", 2, effect)

        entity = store.get("p2")
        assert result is False
        assert entity.status_of(2) == E
        assert entity.stage(2).error == "Stage 2 crashed"
        assert entity.stages[0] == before.stages[0]
        assert entity.stages[1] == before.stages[1]
        assert entity.stages[3] == before.stages[3]

        failed = sink.of_kind(NotificationKind.FAILED)
        assert len(failed) == 1
        assert "Stage 2 crashed" in failed[0].message
        refresh.assert_not_awaited()
        assert controller.pending == frozenset()

    @pytest.mark.asyncio
    async def test_failure_notification_can_be_suppressed(self, controller, sink):
        effect = AsyncMock(side_effect=RuntimeError("nope"))
        await controller.execute("p1", 0, effect, notify_failure=False)
        assert sink.of_kind(NotificationKind.FAILED) == []

    @pytest.mark.asyncio
    async def test_start_rejected_while_server_running(self, controller, store, sink):
        store.apply_patch("p1", lambda e: e.with_stage(1, e.stage(1).model_copy(update={"status": R})))

        assert controller.execute("p1", 1, AsyncMock()) is None
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_refresh_failure_does_not_break_start(self, store, sink):
        refresh = AsyncMock(side_effect=RuntimeError("network down"))
        controller = OptimisticUpdateController(PipelineStateMachine(store), sink, refresh=refresh)

        assert await controller.execute("p1", 0, AsyncMock()) is True

    @pytest.mark.asyncio
    async def test_stop_leaves_running_immediately(self, controller, store, refresh):
        await controller.execute("p1", 0, AsyncMock())
        refresh.reset_mock()
        assert store.get("p1").status_of(0) == R

        stop_effect = AsyncMock()
        task = controller.stop("p1", 0, stop_effect)

        assert store.get("p1").status_of(0) == E
        assert await task is True
        stop_effect.assert_awaited_once()
        refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_failure_notifies_and_refreshes(self, controller, store, sink, refresh):
        await controller.execute("p1", 0, AsyncMock())
        refresh.reset_mock()

        task = controller.stop("p1", 0, AsyncMock(side_effect=BackendError("x", detail="cannot stop")))

        assert await task is False
        assert sink.of_kind(NotificationKind.FAILED)[-1].message == "cannot stop"
        refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, controller):
        assert controller.stop("p1", 0, AsyncMock()) is None
