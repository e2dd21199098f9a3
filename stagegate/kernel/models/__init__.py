"""
SQLAlchemy models for durable stage state and the audit log.
"""

from stagegate.kernel.models.base import Base, TimestampMixin, generate_uuid
from stagegate.kernel.models.event_log import EventLog, EventType
from stagegate.kernel.models.principal_stage import PrincipalStage
from stagegate.kernel.models.trigger_record import TriggerRecord

__all__ = [
    "Base",
    "TimestampMixin",
    "generate_uuid",
    "EventLog",
    "EventType",
    "PrincipalStage",
    "TriggerRecord",
]
