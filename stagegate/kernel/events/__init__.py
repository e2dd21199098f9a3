"""
Stage events: payload types, the in-process bus and the audit store.
"""

from stagegate.kernel.events.event_bus import EventBus
from stagegate.kernel.events.event_store import AuditTrail, EventStore
from stagegate.kernel.events.event_types import (
    BaseEvent,
    BulkReason,
    BulkStagesChanged,
    BypassChanged,
    StageCause,
    StageGranted,
    StageRevoked,
)

__all__ = [
    "AuditTrail",
    "BaseEvent",
    "BulkReason",
    "BulkStagesChanged",
    "BypassChanged",
    "EventBus",
    "EventStore",
    "StageCause",
    "StageGranted",
    "StageRevoked",
]
