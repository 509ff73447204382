"""
Backend synchronization.

Key Components:
- PollingScheduler: polls only while stages run, debounced, with a
  foreground trigger
- EntityRefresher: fetch, reconcile, cache and notify on transitions
"""

from .scheduler import FetchWatermark, PollingScheduler, SchedulerMetrics, SchedulerStatus
from .refresher import EntityRefresher

__all__ = [
    "FetchWatermark",
    "PollingScheduler",
    "SchedulerMetrics",
    "SchedulerStatus",
    "EntityRefresher"
]
