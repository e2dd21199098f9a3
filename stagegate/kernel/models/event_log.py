"""
Immutable event log for the stage audit trail.

Append-only: every grant, revoke, bulk change and bypass toggle is
recorded with its cause.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, String, func, Index, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from stagegate.kernel.models.base import Base, generate_uuid


class EventType(str, Enum):
    """All event types for the audit log."""

    STAGE_GRANTED = "stage.granted"
    STAGE_REVOKED = "stage.revoked"
    STAGES_BULK_CHANGED = "stage.bulk_changed"
    BYPASS_CHANGED = "principal.bypass_changed"
    TRIGGER_FIRED = "trigger.fired"
    DEFINITIONS_RELOADED = "admin.definitions_reloaded"


class EventLog(Base):
    """
    Immutable audit event log.

    This table is append-only - no updates or deletes allowed.
    """

    __tablename__ = "event_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )

    # Event identification
    event_type: Mapped[EventType] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )

    # Entity reference
    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        nullable=False,
        index=True,
    )

    cause: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )

    # Event data
    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    # Timestamp (immutable)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_event_logs_entity", "entity_type", "entity_id"),
        Index("ix_event_logs_type_time", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EventLog {self.event_type} {self.entity_type}:{self.entity_id}>"
