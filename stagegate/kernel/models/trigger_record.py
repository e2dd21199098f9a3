"""
Fired flags for one-shot triggers.

A row exists iff the trigger (type, key) has fired for the principal.
Independent of the in-memory stage state so restarts never re-fire.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from stagegate.kernel.models.base import Base, generate_uuid


class TriggerRecord(Base):
    """One-shot trigger bookkeeping."""

    __tablename__ = "trigger_records"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False)
    trigger_key: Mapped[str] = mapped_column(String(255), nullable=False)
    principal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        nullable=False,
        index=True,
    )
    fired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("trigger_type", "trigger_key", "principal_id", name="uq_trigger_record"),
    )

    def __repr__(self) -> str:
        return f"<TriggerRecord {self.trigger_type}:{self.trigger_key} {self.principal_id}>"
