"""
Observers receive replication messages for one principal.

ObserverCache is the reference client-side cache: snapshots replace,
deltas merge.
"""

import uuid
from typing import Dict, FrozenSet, List, Optional, Protocol, Set, runtime_checkable

from pydantic import BaseModel

from stagegate.engines.replication.messages import (
    BypassFlag,
    DefinitionPayload,
    DeltaOp,
    LockTableSnapshot,
    StageDefinitionsSnapshot,
    StageDelta,
    StageDeltaBatch,
    StageSetSnapshot,
)
from stagegate.kernel.stages.definitions import ResourceKind
from stagegate.kernel.stages.stage_id import StageId


@runtime_checkable
class Observer(Protocol):
    async def send(self, message: BaseModel) -> None:
        ...


class ObserverCache:
    """In-memory mirror of the authoritative state for one principal."""

    def __init__(self, principal_id: Optional[uuid.UUID] = None):
        self.principal_id = principal_id
        self.definitions: Dict[StageId, DefinitionPayload] = {}
        self._stages: Set[StageId] = set()
        self.lock_tables: Dict[ResourceKind, Dict[str, StageId]] = {}
        self.bypass = False
        self.received: List[BaseModel] = []

    @property
    def stages(self) -> FrozenSet[StageId]:
        return frozenset(self._stages)

    async def send(self, message: BaseModel) -> None:
        self.apply(message)

    def apply(self, message: BaseModel) -> None:
        self.received.append(message)
        if isinstance(message, StageDefinitionsSnapshot):
            self.definitions = {d.id: d for d in message.definitions}
        elif isinstance(message, StageSetSnapshot):
            self._stages = set(message.stages)
        elif isinstance(message, StageDeltaBatch):
            for delta in message.deltas:
                self._apply_delta(delta)
        elif isinstance(message, StageDelta):
            self._apply_delta(message)
        elif isinstance(message, LockTableSnapshot):
            self.lock_tables[message.resource_kind] = dict(message.entries)
        elif isinstance(message, BypassFlag):
            self.bypass = message.active

    def _apply_delta(self, delta: StageDelta) -> None:
        if delta.op is DeltaOp.ADD:
            self._stages.add(delta.stage)
        else:
            self._stages.discard(delta.stage)

    def is_locked(self, kind: ResourceKind, resource_id: str) -> bool:
        if self.bypass:
            return False
        required = self.lock_tables.get(ResourceKind(kind), {}).get(resource_id)
        return required is not None and required not in self._stages

    def count(self, message_type: type) -> int:
        return sum(1 for m in self.received if isinstance(m, message_type))
