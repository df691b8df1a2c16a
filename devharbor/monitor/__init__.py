"""Runtime event observation"""

from devharbor.monitor.event_monitor import (
    EVENT_FILTERS,
    EventMonitor,
    MonitorState,
    ProxySyncTrigger,
    Subscription,
)
from devharbor.monitor.state_cache import ResourceStateCache

__all__ = [
    "EVENT_FILTERS",
    "EventMonitor",
    "MonitorState",
    "ProxySyncTrigger",
    "Subscription",
    "ResourceStateCache",
]
