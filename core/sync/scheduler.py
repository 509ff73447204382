"""
Adaptive polling scheduler.

Ticks on a fixed interval but only fetches while some stage is running,
and never more often than the debounce window allows. A separate
foreground trigger refreshes on regaining visibility whether or not work
is running, for runtimes that suspend background timers.
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Set

from ..models.config import PollingConfig

logger = logging.getLogger(__name__)

RefreshFn = Callable[..., Awaitable[Any]]


class SchedulerStatus(Enum):
    """Status of the polling loop."""
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


@dataclass
class SchedulerMetrics:
    """Counters for the polling loop."""
    ticks: int = 0
    refreshes: int = 0
    foreground_refreshes: int = 0
    dropped_requests: int = 0
    failed_refreshes: int = 0
    last_refresh_time: Optional[datetime] = None
    last_refresh_duration_seconds: float = 0.0

    def update_refresh(self, duration: float, foreground: bool, success: bool) -> None:
        self.refreshes += 1
        if foreground:
            self.foreground_refreshes += 1
        if not success:
            self.failed_refreshes += 1
        self.last_refresh_time = datetime.now()
        self.last_refresh_duration_seconds = duration

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticks": self.ticks,
            "refreshes": self.refreshes,
            "foreground_refreshes": self.foreground_refreshes,
            "dropped_requests": self.dropped_requests,
            "failed_refreshes": self.failed_refreshes,
            "last_refresh_time": self.last_refresh_time.isoformat() if self.last_refresh_time else None,
            "last_refresh_duration_seconds": self.last_refresh_duration_seconds
        }


class FetchWatermark:
    """
    Shared record of the most recent backend fetch.

    Every component that fetches the entity list records here, so the
    debounce window applies to all fetches and not only scheduled ones.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.last_fetch: Optional[float] = None
        self._in_flight = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight > 0

    @contextmanager
    def fetching(self) -> Iterator[None]:
        """Mark a fetch in flight; the watermark moves when it ends, failed or not"""
        self._in_flight += 1
        try:
            yield
        finally:
            self._in_flight -= 1
            self.last_fetch = self.clock()

    def within(self, window: float, now: Optional[float] = None) -> bool:
        if self.last_fetch is None:
            return False
        now = self.clock() if now is None else now
        return now - self.last_fetch < window


class PollingScheduler:
    """
    Polls the backend while stages are running.

    The scheduler holds no entity data. It is handed a ``has_running``
    accessor that reads the live store on every tick, so it never acts on
    a stale copy.
    """

    def __init__(
        self,
        has_running: Callable[[], bool],
        refresh: RefreshFn,
        config: Optional[PollingConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        watermark: Optional[FetchWatermark] = None
    ):
        """
        Initialize scheduler.

        Args:
            has_running: Returns True while any stage of any entity is running
            refresh: Coroutine function ``refresh(foreground: bool)``
            config: Tick interval and debounce window
            clock: Monotonic time source in seconds
            watermark: Fetch record shared with other fetchers; a private
                one is created when omitted
        """
        self.has_running = has_running
        self.refresh = refresh
        self.config = config or PollingConfig()
        self.clock = clock
        self.watermark = watermark or FetchWatermark(clock)

        # State management
        self.status = SchedulerStatus.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._pause_event = asyncio.Event()
        self._lifecycle_lock = asyncio.Lock()
        self._triggers: Set[asyncio.Task] = set()

        self.metrics = SchedulerMetrics()

    @property
    def in_flight(self) -> bool:
        return self.watermark.in_flight

    @property
    def last_fetch(self) -> Optional[float]:
        return self.watermark.last_fetch

    @last_fetch.setter
    def last_fetch(self, value: Optional[float]) -> None:
        self.watermark.last_fetch = value

    def within_debounce(self, now: Optional[float] = None) -> bool:
        """True while the last fetch, by anyone, is younger than the debounce window"""
        return self.watermark.within(self.config.debounce_seconds, now)

    def should_refresh(self, now: Optional[float] = None) -> bool:
        """Whether a background tick at ``now`` should fetch"""
        if self.in_flight or not self.has_running():
            return False
        return not self.within_debounce(now)

    async def tick(self) -> bool:
        """
        One background tick.

        Returns:
            True if a refresh was performed
        """
        self.metrics.ticks += 1
        if not self.should_refresh():
            return False
        return await self._do_refresh(foreground=False)

    async def request_refresh(self, foreground: bool = True) -> bool:
        """
        Debounced refresh regardless of running work.

        Requests arriving while a refresh is in flight or inside the
        debounce window are dropped, not queued.
        """
        if self.in_flight or self.within_debounce():
            self.metrics.dropped_requests += 1
            logger.debug("Refresh request dropped (in flight or debounced)")
            return False
        return await self._do_refresh(foreground=foreground)

    def on_visibility_change(self, visible: bool) -> Optional[asyncio.Task]:
        """Hook for the host surface regaining or losing foreground"""
        if not visible:
            return None
        return self.notify_foreground()

    def notify_foreground(self) -> asyncio.Task:
        """Schedule a debounced foreground refresh; safe to call from a signal handler"""
        task = asyncio.get_running_loop().create_task(self.request_refresh(foreground=True))
        self._triggers.add(task)
        task.add_done_callback(self._triggers.discard)
        return task

    async def _do_refresh(self, foreground: bool) -> bool:
        start_time = time.perf_counter()
        success = True
        with self.watermark.fetching():
            try:
                await self.refresh(foreground=foreground)
            except Exception as e:
                success = False
                logger.warning(f"Scheduled refresh failed: {e}")
        self.metrics.update_refresh(time.perf_counter() - start_time, foreground, success)
        return True

    async def start(self) -> bool:
        """
        Start the background polling loop.

        Returns:
            True if started, False if already running
        """
        async with self._lifecycle_lock:
            if self.status != SchedulerStatus.STOPPED:
                logger.warning(f"Polling scheduler is already {self.status.value}")
                return False

            self._shutdown_event.clear()
            self._pause_event.set()
            self._task = asyncio.create_task(self._run_loop())
            self.status = SchedulerStatus.RUNNING

            logger.info(
                f"Started polling scheduler (tick: {self.config.tick_interval}s, "
                f"debounce: {self.config.debounce_seconds}s)"
            )
            return True

    async def stop(self) -> None:
        """Stop the loop and wait for it to exit"""
        async with self._lifecycle_lock:
            if self.status == SchedulerStatus.STOPPED:
                return

            self._shutdown_event.set()
            self._pause_event.set()
            self.status = SchedulerStatus.STOPPED

            if self._task and not self._task.done():
                self._task.cancel()
                try:
                    await asyncio.wait_for(self._task, timeout=5.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    logger.debug("Polling loop cancelled or timed out during shutdown")

            for trigger in list(self._triggers):
                trigger.cancel()

            self._task = None
            logger.info("Polling scheduler stopped")

    async def pause(self) -> None:
        if self.status == SchedulerStatus.RUNNING:
            self._pause_event.clear()
            self.status = SchedulerStatus.PAUSED
            logger.info("Polling scheduler paused")

    async def resume(self) -> None:
        if self.status == SchedulerStatus.PAUSED:
            self._pause_event.set()
            self.status = SchedulerStatus.RUNNING
            logger.info("Polling scheduler resumed")

    async def _run_loop(self) -> None:
        """Main background loop"""
        while not self._shutdown_event.is_set():
            try:
                await self._pause_event.wait()
                if self._shutdown_event.is_set():
                    break

                await self.tick()

                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.config.tick_interval
                    )
                    break
                except asyncio.TimeoutError:
                    continue

            except asyncio.CancelledError:
                logger.debug("Polling loop cancelled")
                break

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "in_flight": self.in_flight,
            "last_fetch": self.last_fetch,
            "config": {
                "tick_interval": self.config.tick_interval,
                "debounce_seconds": self.config.debounce_seconds
            },
            "metrics": self.metrics.to_dict()
        }
