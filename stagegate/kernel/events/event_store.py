"""
Event Store service for append-only audit logging.

EventStore writes rows within a caller's session. AuditTrail subscribes to
the EventBus and records every stage event in its own short transaction.
"""

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import select, and_, desc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stagegate.kernel.events.event_bus import EventBus
from stagegate.kernel.events.event_types import (
    BaseEvent,
    BulkStagesChanged,
    BypassChanged,
    StageGranted,
    StageRevoked,
)
from stagegate.kernel.models.event_log import EventLog, EventType
from stagegate.logging_config import get_logger

logger = get_logger(__name__)

_EVENT_TYPES = {
    StageGranted: EventType.STAGE_GRANTED,
    StageRevoked: EventType.STAGE_REVOKED,
    BulkStagesChanged: EventType.STAGES_BULK_CHANGED,
    BypassChanged: EventType.BYPASS_CHANGED,
}


class EventStore:
    """
    Service for managing the immutable event log.

    Usage:
        event_store = EventStore(session)
        await event_store.log(
            event_type=EventType.STAGE_GRANTED,
            entity_type="principal",
            entity_id=principal_id,
            cause="command",
            payload={"stage": "stagegate:iron_age"},
        )
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        event_type: EventType,
        entity_type: str,
        entity_id: uuid.UUID,
        cause: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> EventLog:
        """
        Add an event to the session. Caller commits.

        Args:
            event_type: The type of event
            entity_type: The type of entity (principal, stage, ...)
            entity_id: The ID of the entity
            cause: Why the change happened
            payload: Additional event data

        Returns:
            The created EventLog record
        """
        event = EventLog(
            event_type=event_type.value,
            entity_type=entity_type,
            entity_id=entity_id,
            cause=cause,
            payload=payload or {},
        )
        self.session.add(event)
        return event

    async def log_from_model(self, event_type: EventType, entity_type: str, entity_id: uuid.UUID,
                             payload_model: BaseModel, cause: Optional[str] = None) -> EventLog:
        payload = payload_model.model_dump(mode="json")
        return await self.log(event_type, entity_type, entity_id, cause=cause, payload=payload)

    async def get_entity_history(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        event_types: Optional[List[EventType]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[EventLog]:
        """
        Get the event history for a specific entity, newest first.
        """
        query = select(EventLog).where(
            and_(
                EventLog.entity_type == entity_type,
                EventLog.entity_id == entity_id,
            )
        )

        if event_types:
            query = query.where(EventLog.event_type.in_([t.value for t in event_types]))

        query = query.order_by(desc(EventLog.created_at), desc(EventLog.id)).offset(offset).limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())


class AuditTrail:
    """EventBus subscriber persisting stage events to the event log."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(BaseEvent, self.record)

    async def record(self, event: BaseEvent) -> None:
        event_type = _EVENT_TYPES.get(type(event))
        if event_type is None:
            return
        cause = getattr(event, "cause", None)
        async with self.session_maker() as session:
            await EventStore(session).log_from_model(
                event_type,
                "principal",
                event.principal_id,
                payload_model=event,
                cause=cause.value if cause is not None else None,
            )
            await session.commit()
