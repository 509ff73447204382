"""
Notification sinks and in-memory notification center.
"""

from .center import FanOutSink, NotificationCenter, NotificationSink, RemoteNotificationSink

__all__ = [
    "FanOutSink",
    "NotificationCenter",
    "NotificationSink",
    "RemoteNotificationSink"
]
