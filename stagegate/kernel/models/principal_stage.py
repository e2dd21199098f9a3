"""
Durable held-stage rows, one per (principal, stage).
"""

import uuid

from sqlalchemy import String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from stagegate.kernel.models.base import Base, TimestampMixin, generate_uuid


class PrincipalStage(Base, TimestampMixin):
    """A stage held by a principal."""

    __tablename__ = "principal_stages"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    principal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        nullable=False,
        index=True,
    )
    stage_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("principal_id", "stage_id", name="uq_principal_stage"),
    )

    def __repr__(self) -> str:
        return f"<PrincipalStage {self.principal_id} {self.stage_id}>"
