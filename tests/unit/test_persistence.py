"""Unit tests for SQL durability and the audit trail."""

import uuid

from stagegate.kernel.events.event_bus import EventBus
from stagegate.kernel.events.event_store import AuditTrail, EventStore
from stagegate.kernel.events.event_types import BulkReason, BulkStagesChanged, StageCause, StageGranted
from stagegate.kernel.models.event_log import EventType
from stagegate.kernel.persistence.durable import Durable, InMemoryDurable, SqlDurable
from stagegate.kernel.stages.stage_id import StageId


def sid(raw: str) -> StageId:
    return StageId.parse(raw)


class TestSqlDurable:
    """Tests for principal state and trigger records in SQL."""

    def test_implementations_satisfy_protocol(self, session_maker):
        assert isinstance(InMemoryDurable(), Durable)
        assert isinstance(SqlDurable(session_maker), Durable)

    async def test_state_round_trip_and_replace(self, session_maker):
        durable = SqlDurable(session_maker)
        principal = uuid.uuid4()
        assert await durable.load_principal_state(principal) == frozenset()

        await durable.save_principal_state(principal, {sid("base"), sid("mid")})
        assert await durable.load_principal_state(principal) == {sid("base"), sid("mid")}

        await durable.save_principal_state(principal, {sid("mid"), sid("late")})
        assert await durable.load_principal_state(principal) == {sid("mid"), sid("late")}

    async def test_principals_are_isolated(self, session_maker):
        durable = SqlDurable(session_maker)
        a, b = uuid.uuid4(), uuid.uuid4()
        await durable.save_principal_state(a, {sid("base")})
        await durable.save_principal_state(b, set())
        assert await durable.load_principal_state(a) == {sid("base")}
        assert await durable.load_principal_state(b) == frozenset()

    async def test_trigger_records(self, session_maker):
        durable = SqlDurable(session_maker)
        principal = uuid.uuid4()
        assert await durable.load_trigger_record("region_entry", "base:the_nether", principal) is False
        await durable.save_trigger_record("region_entry", "base:the_nether", principal)
        await durable.save_trigger_record("region_entry", "base:the_nether", principal)
        assert await durable.load_trigger_record("region_entry", "base:the_nether", principal) is True
        assert await durable.load_trigger_record("region_entry", "base:the_nether", uuid.uuid4()) is False


class TestAuditTrail:
    """Tests for event log recording."""

    async def test_bus_events_are_recorded(self, session_maker):
        bus = EventBus()
        AuditTrail(session_maker).attach(bus)
        principal = uuid.uuid4()

        await bus.publish(StageGranted(principal_id=principal, stage=sid("base"), cause=StageCause.COMMAND))
        await bus.publish(BulkStagesChanged(
            principal_id=principal,
            stages=[sid("base")],
            reason=BulkReason.CONNECT,
            cause=StageCause.AUTO,
        ))

        async with session_maker() as session:
            history = await EventStore(session).get_entity_history("principal", principal)
        assert {row.event_type for row in history} == {
            EventType.STAGE_GRANTED.value,
            EventType.STAGES_BULK_CHANGED.value,
        }
        granted = next(r for r in history if r.event_type == EventType.STAGE_GRANTED.value)
        assert granted.cause == "command"
        assert granted.payload["stage"] == "stagegate:base"

    async def test_history_filters_by_type(self, session_maker):
        principal = uuid.uuid4()
        async with session_maker() as session:
            store = EventStore(session)
            await store.log(EventType.STAGE_GRANTED, "principal", principal, cause="api", payload={"stage": "a"})
            await store.log(EventType.BYPASS_CHANGED, "principal", principal, payload={"active": True})
            await session.commit()

        async with session_maker() as session:
            rows = await EventStore(session).get_entity_history(
                "principal", principal, event_types=[EventType.BYPASS_CHANGED]
            )
        assert len(rows) == 1
        assert rows[0].payload == {"active": True}
