"""
Durable storage collaborator.

The engine only depends on the Durable protocol. InMemoryDurable backs
tests and ephemeral deployments; SqlDurable stores rows through the
SQLAlchemy async session factory.
"""

import uuid
from typing import Dict, FrozenSet, Iterable, Protocol, Set, Tuple, runtime_checkable

from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from stagegate.kernel.models.principal_stage import PrincipalStage
from stagegate.kernel.models.trigger_record import TriggerRecord
from stagegate.kernel.stages.stage_id import InvalidStageId, StageId
from stagegate.logging_config import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Durable(Protocol):
    async def load_principal_state(self, principal_id: uuid.UUID) -> FrozenSet[StageId]:
        ...

    async def save_principal_state(self, principal_id: uuid.UUID, stages: Iterable[StageId]) -> None:
        ...

    async def load_trigger_record(self, trigger_type: str, trigger_key: str, principal_id: uuid.UUID) -> bool:
        ...

    async def save_trigger_record(self, trigger_type: str, trigger_key: str, principal_id: uuid.UUID) -> None:
        ...


class InMemoryDurable:
    """Process-local Durable implementation."""

    def __init__(self):
        self.principals: Dict[uuid.UUID, FrozenSet[StageId]] = {}
        self.trigger_records: Set[Tuple[str, str, uuid.UUID]] = set()
        self.saves = 0

    async def load_principal_state(self, principal_id: uuid.UUID) -> FrozenSet[StageId]:
        return self.principals.get(principal_id, frozenset())

    async def save_principal_state(self, principal_id: uuid.UUID, stages: Iterable[StageId]) -> None:
        self.principals[principal_id] = frozenset(stages)
        self.saves += 1

    async def load_trigger_record(self, trigger_type: str, trigger_key: str, principal_id: uuid.UUID) -> bool:
        return (trigger_type, trigger_key, principal_id) in self.trigger_records

    async def save_trigger_record(self, trigger_type: str, trigger_key: str, principal_id: uuid.UUID) -> None:
        self.trigger_records.add((trigger_type, trigger_key, principal_id))


class SqlDurable:
    """
    Durable implementation over principal_stages and trigger_records.

    Usage:
        durable = SqlDurable(async_session_maker)
        await durable.save_principal_state(principal_id, {StageId.parse("iron_age")})
    """

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def load_principal_state(self, principal_id: uuid.UUID) -> FrozenSet[StageId]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(PrincipalStage.stage_id).where(PrincipalStage.principal_id == principal_id)
            )
            stages = set()
            for raw in result.scalars().all():
                try:
                    stages.add(StageId.parse(raw))
                except InvalidStageId:
                    logger.warning(
                        "Ignoring unparseable stored stage",
                        extra={"principal_id": str(principal_id), "stage": raw},
                    )
            return frozenset(stages)

    async def save_principal_state(self, principal_id: uuid.UUID, stages: Iterable[StageId]) -> None:
        wanted = {str(s) for s in stages}
        async with self.session_maker() as session:
            result = await session.execute(
                select(PrincipalStage.stage_id).where(PrincipalStage.principal_id == principal_id)
            )
            existing = set(result.scalars().all())

            stale = existing - wanted
            if stale:
                await session.execute(
                    delete(PrincipalStage).where(
                        and_(
                            PrincipalStage.principal_id == principal_id,
                            PrincipalStage.stage_id.in_(stale),
                        )
                    )
                )
            for stage_id in sorted(wanted - existing):
                session.add(PrincipalStage(principal_id=principal_id, stage_id=stage_id))
            await session.commit()

    async def load_trigger_record(self, trigger_type: str, trigger_key: str, principal_id: uuid.UUID) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TriggerRecord.id).where(
                    and_(
                        TriggerRecord.trigger_type == trigger_type,
                        TriggerRecord.trigger_key == trigger_key,
                        TriggerRecord.principal_id == principal_id,
                    )
                )
            )
            return result.first() is not None

    async def save_trigger_record(self, trigger_type: str, trigger_key: str, principal_id: uuid.UUID) -> None:
        if await self.load_trigger_record(trigger_type, trigger_key, principal_id):
            return
        async with self.session_maker() as session:
            session.add(TriggerRecord(
                trigger_type=trigger_type,
                trigger_key=trigger_key,
                principal_id=principal_id,
            ))
            await session.commit()
