"""
Notification sinks.

Pipeline components only know the NotificationSink protocol. The
NotificationCenter keeps the newest notifications in memory with read
state; RemoteNotificationSink forwards events to the backend in the
background; FanOutSink delivers to several sinks at once.
"""

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING, Callable, Deque, Dict, List, Optional, Protocol, Set

from ..models.notifications import Notification, NotificationEvent, NotificationKind

if TYPE_CHECKING:
    from ..client.backend import PipelineBackendClient

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Anything that accepts notification events"""

    def emit(self, event: NotificationEvent) -> None:
        ...


class NotificationCenter:
    """
    In-memory notification list with read state.

    Keeps at most ``max_kept`` notifications, newest first; older ones are
    dropped as new ones arrive.
    """

    def __init__(self, max_kept: int = 50):
        self.max_kept = max_kept
        self._items: Deque[Notification] = deque(maxlen=max_kept)
        self._listeners: List[Callable[[Notification], None]] = []

    def emit(self, event: NotificationEvent) -> None:
        self.add(event)

    def add(self, event: NotificationEvent) -> Notification:
        notification = Notification(event=event)
        self._items.appendleft(notification)
        logger.info(f"[{event.kind.value}] {event.title}: {event.message}")

        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as e:
                logger.error(f"Notification listener failed: {e}")
        return notification

    @property
    def notifications(self) -> List[Notification]:
        """Newest first"""
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._items if not n.read)

    def events(
        self,
        kind: Optional[NotificationKind] = None,
        entity_id: Optional[str] = None
    ) -> List[NotificationEvent]:
        """Events matching the given filters, newest first"""
        return [
            n.event for n in self._items
            if (kind is None or n.kind == kind)
            and (entity_id is None or n.event.entity_id == entity_id)
        ]

    def mark_read(self, notification_id: str) -> bool:
        for notification in self._items:
            if notification.id == notification_id:
                notification.read = True
                return True
        return False

    def mark_all_read(self) -> int:
        """Returns how many were unread"""
        count = 0
        for notification in self._items:
            if not notification.read:
                notification.read = True
                count += 1
        return count

    def delete(self, notification_id: str) -> bool:
        for notification in self._items:
            if notification.id == notification_id:
                self._items.remove(notification)
                return True
        return False

    def clear(self) -> None:
        self._items.clear()

    def subscribe(self, listener: Callable[[Notification], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def to_dict(self) -> Dict[str, object]:
        return {
            'unread_count': self.unread_count,
            'notifications': [n.to_dict() for n in self._items]
        }


class RemoteNotificationSink:
    """Forwards events to the backend notifications endpoint without blocking"""

    def __init__(self, client: 'PipelineBackendClient', tenant_id: str):
        self.client = client
        self.tenant_id = tenant_id
        self._pending: Set[asyncio.Task] = set()
        self.failures = 0

    def emit(self, event: NotificationEvent) -> None:
        task = asyncio.get_running_loop().create_task(self._send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, event: NotificationEvent) -> None:
        try:
            await self.client.create_notification(
                tenant_id=self.tenant_id,
                notification_type=event.kind.severity,
                title=event.title,
                message=event.message,
                product_id=event.entity_id,
                product_name=event.entity_name,
                step=event.stage,
                priority=event.kind.priority,
            )
        except Exception as e:
            self.failures += 1
            logger.warning(f"Failed to forward notification for {event.entity_id}: {e}")

    async def drain(self) -> None:
        """Wait for in-flight deliveries"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class FanOutSink:
    """Delivers each event to every wrapped sink"""

    def __init__(self, *sinks: NotificationSink):
        self.sinks: List[NotificationSink] = list(sinks)

    def add(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def emit(self, event: NotificationEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.error(f"Notification sink {type(sink).__name__} failed: {e}")
