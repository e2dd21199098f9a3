"""
Authoritative per-principal stage sets.

Held sets are frozensets replaced copy-on-write, so has() and the access
queries never take a lock. Mutations of one principal are serialized by
an asyncio.Lock; change listeners run under that lock in mutation order,
and EventBus publication happens after it is released. Durable saves take
the same lock, so a save never interleaves with a mutation of that principal.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Union

from stagegate.kernel.errors import MissingDependenciesError
from stagegate.kernel.events.event_bus import EventBus
from stagegate.kernel.events.event_types import (
    BaseEvent,
    BulkReason,
    BulkStagesChanged,
    BypassChanged,
    StageCause,
    StageGranted,
    StageRevoked,
)
from stagegate.kernel.persistence.durable import Durable
from stagegate.kernel.rules.cache import ResolutionCache
from stagegate.kernel.rules.registry import ResourceRef
from stagegate.kernel.stages.definitions import ResourceKind
from stagegate.kernel.stages.graph import BypassTokens, GrantPolicy, RevokePolicy, StageGraph
from stagegate.kernel.stages.stage_id import StageId
from stagegate.logging_config import get_logger

logger = get_logger(__name__)

EMPTY: FrozenSet[StageId] = frozenset()

StageRef = Union[StageId, str]
ChangeListener = Callable[[BaseEvent], None]


def _sorted(stages: Iterable[StageId]) -> List[StageId]:
    return sorted(stages)


class PrincipalStore:
    """
    Owner of every principal's held stage set.

    Usage:
        store = PrincipalStore(graph, cache, bus, durable)
        await store.load(principal_id)
        await store.grant(principal_id, "stagegate:iron_age", StageCause.COMMAND)
        store.is_locked(principal_id, ResourceKind.ITEM, "base:iron_ingot")
    """

    def __init__(
        self,
        graph: StageGraph,
        cache: ResolutionCache,
        bus: EventBus,
        durable: Optional[Durable] = None,
        *,
        grant_policy: GrantPolicy = GrantPolicy.CASCADING,
        revoke_policy: RevokePolicy = RevokePolicy.NO_CASCADE,
        bypass_tokens: Optional[BypassTokens] = None,
    ):
        self.graph = graph
        self.cache = cache
        self.bus = bus
        self.durable = durable
        self.grant_policy = GrantPolicy(grant_policy)
        self.revoke_policy = RevokePolicy(revoke_policy)
        self.bypass_tokens = bypass_tokens or BypassTokens()
        self._sets: Dict[uuid.UUID, FrozenSet[StageId]] = {}
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}
        self._lock_users: Dict[uuid.UUID, int] = {}
        self._bypass: Set[uuid.UUID] = set()
        self._dirty: Set[uuid.UUID] = set()
        self._listeners: List[ChangeListener] = []

    # Listeners

    def on_change(self, listener: ChangeListener) -> None:
        """Register a synchronous listener called under the principal lock. Must not block."""
        self._listeners.append(listener)

    def _notify(self, events: List[BaseEvent]) -> None:
        for event in events:
            for listener in self._listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception(
                        "Change listener failed",
                        extra={"principal_id": str(event.principal_id), "event_type": type(event).__name__},
                    )

    @asynccontextmanager
    async def _locked(self, principal_id: uuid.UUID) -> AsyncIterator[None]:
        """Hold the principal's lock; the lock is dropped once unused and unloaded."""
        lock = self._locks.get(principal_id)
        if lock is None:
            lock = self._locks[principal_id] = asyncio.Lock()
        self._lock_users[principal_id] = self._lock_users.get(principal_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[principal_id] - 1
            if remaining:
                self._lock_users[principal_id] = remaining
            else:
                del self._lock_users[principal_id]
                if principal_id not in self._sets:
                    self._locks.pop(principal_id, None)

    async def _current(self, principal_id: uuid.UUID) -> FrozenSet[StageId]:
        """Held set, reading durable state first for a principal not yet in memory."""
        current = self._sets.get(principal_id)
        if current is None:
            current = EMPTY
            if self.durable is not None:
                current = frozenset(await self.durable.load_principal_state(principal_id))
            self._sets[principal_id] = current
        return current

    def _commit(self, principal_id: uuid.UUID, stages: FrozenSet[StageId], events: List[BaseEvent]) -> None:
        self._sets[principal_id] = stages
        self._dirty.add(principal_id)
        self._notify(events)

    # Reads

    def has(self, principal_id: uuid.UUID, stage: StageRef) -> bool:
        return StageId.parse(stage) in self._sets.get(principal_id, EMPTY)

    def stages(self, principal_id: uuid.UUID) -> FrozenSet[StageId]:
        return self._sets.get(principal_id, EMPTY)

    def principals(self) -> List[uuid.UUID]:
        return list(self._sets)

    def is_loaded(self, principal_id: uuid.UUID) -> bool:
        return principal_id in self._sets

    def missing_dependencies(self, principal_id: uuid.UUID, stage: StageRef) -> List[StageId]:
        return self.graph.missing_dependencies(self.stages(principal_id), StageId.parse(stage))

    # Mutations

    async def grant(
        self,
        principal_id: uuid.UUID,
        stage: StageRef,
        cause: StageCause = StageCause.UNKNOWN,
        *,
        bypass_dependencies: bool = False,
    ) -> List[StageId]:
        """
        Grant a stage. Returns the stages newly added, dependencies first.

        Raises:
            UnknownStageError: stage is not defined
            DependencyError: stage is part of a broken subgraph
            MissingDependenciesError: strict policy without a valid bypass token
        """
        cause = StageCause(cause)
        stage_id = StageId.parse(stage)
        self.graph.ensure_grantable(stage_id)

        async with self._locked(principal_id):
            current = await self._current(principal_id)
            if stage_id in current:
                return []

            added: List[StageId] = []
            missing = self.graph.missing_dependencies(current, stage_id)
            if missing and not bypass_dependencies:
                if self.grant_policy is GrantPolicy.CASCADING:
                    added.extend(missing)
                elif not self.bypass_tokens.consume(principal_id, stage_id):
                    raise MissingDependenciesError(stage_id, missing)
            added.append(stage_id)

            events: List[BaseEvent] = []
            for granted in added:
                definition = self.graph.get(granted)
                events.append(StageGranted(
                    principal_id=principal_id,
                    stage=granted,
                    cause=cause,
                    unlock_message=definition.unlock_message if definition else None,
                ))
            self._commit(principal_id, current | frozenset(added), events)

        logger.info(
            "Stage granted",
            extra={
                "principal_id": str(principal_id),
                "stage": str(stage_id),
                "added": [str(s) for s in added],
                "cause": cause.value,
            },
        )
        await self.bus.publish_all(events)
        return added

    async def revoke(
        self,
        principal_id: uuid.UUID,
        stage: StageRef,
        cause: StageCause = StageCause.UNKNOWN,
    ) -> List[StageId]:
        """Remove a stage (and dependents, if configured). Returns what was removed."""
        cause = StageCause(cause)
        stage_id = StageId.parse(stage)
        targets = [stage_id]
        if self.revoke_policy is RevokePolicy.CASCADE_DEPENDENTS:
            targets.extend(self.graph.descendants(stage_id))

        async with self._locked(principal_id):
            current = await self._current(principal_id)
            removed = [s for s in targets if s in current]
            if not removed:
                return []
            events: List[BaseEvent] = [
                StageRevoked(principal_id=principal_id, stage=s, cause=cause) for s in removed
            ]
            self._commit(principal_id, current - frozenset(removed), events)

        logger.info(
            "Stage revoked",
            extra={
                "principal_id": str(principal_id),
                "stage": str(stage_id),
                "removed": [str(s) for s in removed],
                "cause": cause.value,
            },
        )
        await self.bus.publish_all(events)
        return removed

    async def apply_grants(self, principal_id: uuid.UUID, stages: Iterable[StageId],
                           cause: StageCause) -> List[StageId]:
        """Add exactly these stages, without dependency handling."""
        wanted = [StageId.parse(s) for s in stages]
        async with self._locked(principal_id):
            current = await self._current(principal_id)
            added = [s for s in dict.fromkeys(wanted) if s not in current]
            if not added:
                return []
            events: List[BaseEvent] = []
            for stage_id in added:
                definition = self.graph.get(stage_id)
                events.append(StageGranted(
                    principal_id=principal_id,
                    stage=stage_id,
                    cause=cause,
                    unlock_message=definition.unlock_message if definition else None,
                ))
            self._commit(principal_id, current | frozenset(added), events)
        await self.bus.publish_all(events)
        return added

    async def apply_revokes(self, principal_id: uuid.UUID, stages: Iterable[StageId],
                            cause: StageCause) -> List[StageId]:
        """Remove exactly these stages."""
        wanted = [StageId.parse(s) for s in stages]
        async with self._locked(principal_id):
            current = await self._current(principal_id)
            removed = [s for s in dict.fromkeys(wanted) if s in current]
            if not removed:
                return []
            events: List[BaseEvent] = [
                StageRevoked(principal_id=principal_id, stage=s, cause=cause) for s in removed
            ]
            self._commit(principal_id, current - frozenset(removed), events)
        await self.bus.publish_all(events)
        return removed

    async def load(self, principal_id: uuid.UUID, reason: BulkReason = BulkReason.CONNECT) -> FrozenSet[StageId]:
        """Read the principal's durable state into memory and announce it as one bulk change."""
        async with self._locked(principal_id):
            stages = await self._current(principal_id)
            event = BulkStagesChanged(
                principal_id=principal_id,
                stages=_sorted(stages),
                reason=reason,
                cause=StageCause.AUTO,
            )
            self._notify([event])
        await self.bus.publish(event)
        return stages

    async def replace(
        self,
        principal_id: uuid.UUID,
        stages: Iterable[StageRef],
        cause: StageCause = StageCause.UNKNOWN,
        reason: BulkReason = BulkReason.REPLACE,
    ) -> FrozenSet[StageId]:
        """Set the principal's stages to exactly `stages`, emitting one BulkStagesChanged."""
        cause = StageCause(cause)
        reason = BulkReason(reason)
        new = frozenset(StageId.parse(s) for s in stages)
        async with self._locked(principal_id):
            event = BulkStagesChanged(
                principal_id=principal_id,
                stages=_sorted(new),
                reason=reason,
                cause=cause,
            )
            self._commit(principal_id, new, [event])
        logger.info(
            "Stages replaced",
            extra={"principal_id": str(principal_id), "count": len(new), "reason": reason.value},
        )
        await self.bus.publish(event)
        return new

    async def unload(self, principal_id: uuid.UUID) -> None:
        """
        Persist and drop a principal's in-memory state.

        The final save happens under the principal lock, so a mutation racing
        the unload either lands in the saved snapshot or reloads from it.
        """
        async with self._locked(principal_id):
            stages = self._sets.get(principal_id)
            if principal_id in self._dirty and stages is not None and self.durable is not None:
                await self.durable.save_principal_state(principal_id, stages)
            self._dirty.discard(principal_id)
            self._sets.pop(principal_id, None)
            self._bypass.discard(principal_id)

    # Bypass flag

    def is_bypassing(self, principal_id: uuid.UUID) -> bool:
        return principal_id in self._bypass

    async def set_bypass(self, principal_id: uuid.UUID, active: bool) -> bool:
        """Toggle the administrative override. Returns True if it changed."""
        async with self._locked(principal_id):
            if (principal_id in self._bypass) == active:
                return False
            if active:
                self._bypass.add(principal_id)
            else:
                self._bypass.discard(principal_id)
            event = BypassChanged(principal_id=principal_id, active=active)
            self._notify([event])
        logger.info("Bypass changed", extra={"principal_id": str(principal_id), "active": active})
        await self.bus.publish(event)
        return True

    # Access queries; these fail open and never raise

    def required_stage(self, kind: ResourceKind, resource: ResourceRef) -> Optional[StageId]:
        return self.cache.resolve(kind, resource)

    def is_locked(self, principal_id: uuid.UUID, kind: ResourceKind, resource: ResourceRef) -> bool:
        if principal_id in self._bypass:
            return False
        required = self.cache.resolve(kind, resource)
        return required is not None and required not in self._sets.get(principal_id, EMPTY)

    def is_interaction_locked(
        self,
        principal_id: uuid.UUID,
        interaction_type: str,
        held: Optional[str] = None,
        target: Optional[str] = None,
    ) -> bool:
        if principal_id in self._bypass:
            return False
        required = self.cache.resolve_interaction(interaction_type, held, target)
        return required is not None and required not in self._sets.get(principal_id, EMPTY)

    def lock_table(self, kind: ResourceKind) -> Dict[str, StageId]:
        return self.cache.resolve_all(kind)

    # Write-behind persistence

    def dirty(self) -> List[uuid.UUID]:
        return list(self._dirty)

    async def flush_principal(self, principal_id: uuid.UUID) -> bool:
        """Save one dirty principal. Returns True if a snapshot was written."""
        async with self._locked(principal_id):
            if principal_id not in self._dirty:
                return False
            stages = self._sets.get(principal_id)
            self._dirty.discard(principal_id)
            if stages is None or self.durable is None:
                return False
            try:
                await self.durable.save_principal_state(principal_id, stages)
            except Exception:
                self._dirty.add(principal_id)
                raise
            return True

    async def flush(self) -> int:
        """Persist the latest snapshot of every dirty principal; failures stay dirty."""
        flushed = 0
        failed = 0
        for principal_id in list(self._dirty):
            try:
                if await self.flush_principal(principal_id):
                    flushed += 1
            except Exception:
                failed += 1
                logger.exception("Failed to persist principal state", extra={"principal_id": str(principal_id)})
        if flushed or failed:
            logger.debug("Flushed principal state", extra={"count": flushed, "failed": failed})
        return flushed
