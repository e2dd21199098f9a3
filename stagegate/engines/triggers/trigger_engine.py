"""
Trigger Engine - automatic grants from external events.

Events are queued per principal and evaluated in process_cycle() under a
per-cycle budget. One-shot triggers (region entry, entity defeat) record a
durable fired flag so a restart never re-fires them; recurring triggers
(possession, achievement) simply re-grant, which is idempotent.
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from stagegate.engines.triggers.quest_host import QuestHost
from stagegate.kernel.errors import StageGateError, TriggerError
from stagegate.kernel.events.event_bus import EventBus
from stagegate.kernel.events.event_types import (
    BaseEvent,
    BulkStagesChanged,
    StageCause,
    StageGranted,
    StageRevoked,
)
from stagegate.kernel.persistence.durable import Durable
from stagegate.kernel.principals.store import PrincipalStore
from stagegate.kernel.stages.stage_id import StageId, try_normalize_resource_id
from stagegate.logging_config import get_logger

logger = get_logger(__name__)


class TriggerKind(str, Enum):
    POSSESSION = "possession"
    ACHIEVEMENT = "achievement"
    REGION_ENTRY = "region_entry"
    ENTITY_DEFEAT = "entity_defeat"

    @property
    def one_shot(self) -> bool:
        return self in (TriggerKind.REGION_ENTRY, TriggerKind.ENTITY_DEFEAT)

    @property
    def cause(self) -> StageCause:
        return _CAUSES[self]


_CAUSES = {
    TriggerKind.POSSESSION: StageCause.INVENTORY_CHECK,
    TriggerKind.ACHIEVEMENT: StageCause.ACHIEVEMENT,
    TriggerKind.REGION_ENTRY: StageCause.REGION_ENTRY,
    TriggerKind.ENTITY_DEFEAT: StageCause.ENTITY_DEFEAT,
}


class TriggerRule(BaseModel):
    """(kind, key) -> stage."""

    model_config = ConfigDict(frozen=True)

    kind: TriggerKind
    key: str
    stage: StageId


def normalize_trigger_key(raw: str) -> str:
    return try_normalize_resource_id(raw) or raw.strip().lower()


@dataclass
class _Work:
    facts: "OrderedDict[Tuple[TriggerKind, str], None]" = field(default_factory=OrderedDict)
    recheck: bool = False

    def merge(self, other: "_Work") -> None:
        for fact in other.facts:
            self.facts[fact] = None
        self.recheck = self.recheck or other.recheck


@dataclass
class CycleReport:
    processed: int = 0
    granted: int = 0
    carried_over: int = 0
    deferred: int = 0


class TriggerEngine:
    """
    Maps external events to grants.

    Usage:
        engine = TriggerEngine(store, durable, bus, budget_per_cycle=20)
        engine.load(rules)
        engine.attach()
        engine.notify(principal_id, TriggerKind.REGION_ENTRY, "base:the_nether")
        await engine.process_cycle()
    """

    def __init__(
        self,
        store: PrincipalStore,
        durable: Durable,
        bus: EventBus,
        *,
        budget_per_cycle: int = 20,
        quest_host: Optional[QuestHost] = None,
    ):
        self.store = store
        self.durable = durable
        self.bus = bus
        self.budget_per_cycle = max(1, budget_per_cycle)
        self.quest_host = quest_host
        self.quest_host_enabled = quest_host is not None
        self._rules: Dict[Tuple[TriggerKind, str], List[StageId]] = {}
        self._queue: "OrderedDict[uuid.UUID, _Work]" = OrderedDict()
        self._deferred: "OrderedDict[uuid.UUID, _Work]" = OrderedDict()
        self._in_flight: set = set()

    def attach(self) -> None:
        self.bus.subscribe(StageGranted, self._on_stage_change)
        self.bus.subscribe(StageRevoked, self._on_stage_change)
        self.bus.subscribe(BulkStagesChanged, self._on_stage_change)

    # Rules

    def load(self, rules: Iterable[TriggerRule]) -> int:
        table: Dict[Tuple[TriggerKind, str], List[StageId]] = {}
        count = 0
        for rule in rules:
            stages = table.setdefault((rule.kind, normalize_trigger_key(rule.key)), [])
            if rule.stage not in stages:
                stages.append(rule.stage)
                count += 1
        self._rules = table
        logger.info("Triggers loaded", extra={"count": count})
        return count

    def rules(self) -> List[TriggerRule]:
        return [
            TriggerRule(kind=kind, key=key, stage=stage)
            for (kind, key), stages in self._rules.items()
            for stage in stages
        ]

    def stages_for(self, kind: TriggerKind, key: str) -> List[StageId]:
        return list(self._rules.get((TriggerKind(kind), normalize_trigger_key(key)), ()))

    def set_quest_host(self, quest_host: Optional[QuestHost]) -> None:
        self.quest_host = quest_host
        self.quest_host_enabled = quest_host is not None

    # Queueing

    def _enqueue(self, principal_id: uuid.UUID, work: _Work) -> None:
        target = self._deferred if principal_id in self._in_flight else self._queue
        existing = target.get(principal_id)
        if existing is None:
            target[principal_id] = work
        else:
            existing.merge(work)

    def notify(self, principal_id: uuid.UUID, kind: TriggerKind, key: str) -> None:
        kind = TriggerKind(kind)
        work = _Work()
        work.facts[(kind, normalize_trigger_key(key))] = None
        self._enqueue(principal_id, work)

    def notify_possession(self, principal_id: uuid.UUID, resource_ids: Iterable[str]) -> None:
        work = _Work()
        for resource_id in resource_ids:
            work.facts[(TriggerKind.POSSESSION, normalize_trigger_key(resource_id))] = None
        if work.facts:
            self._enqueue(principal_id, work)

    def request_recheck(self, principal_id: uuid.UUID) -> None:
        if self.quest_host_enabled:
            self._enqueue(principal_id, _Work(recheck=True))

    def _on_stage_change(self, event: BaseEvent) -> None:
        self.request_recheck(event.principal_id)

    def pending(self) -> List[uuid.UUID]:
        return list(self._queue) + [p for p in self._deferred if p not in self._queue]

    # Processing

    async def process_cycle(self) -> CycleReport:
        """Evaluate up to budget_per_cycle principals; the rest wait for the next cycle."""
        report = CycleReport()
        while self._queue and report.processed < self.budget_per_cycle:
            principal_id, work = self._queue.popitem(last=False)
            self._in_flight.add(principal_id)
            try:
                report.granted += await self._evaluate(principal_id, work)
            finally:
                self._in_flight.discard(principal_id)
            report.processed += 1

        report.carried_over = len(self._queue)
        report.deferred = len(self._deferred)
        deferred, self._deferred = self._deferred, OrderedDict()
        for principal_id, work in deferred.items():
            self._enqueue(principal_id, work)
        if report.processed:
            logger.debug(
                "Trigger cycle processed",
                extra={
                    "processed": report.processed,
                    "granted": report.granted,
                    "carried_over": report.carried_over,
                    "deferred": report.deferred,
                },
            )
        return report

    async def _evaluate(self, principal_id: uuid.UUID, work: _Work) -> int:
        granted = 0
        for kind, key in work.facts:
            stages = self._rules.get((kind, key))
            if not stages:
                continue
            if kind.one_shot and await self.durable.load_trigger_record(kind.value, key, principal_id):
                continue
            fired = True
            for stage in stages:
                try:
                    granted += len(await self.store.grant(principal_id, stage, kind.cause))
                except StageGateError as exc:
                    fired = False
                    logger.warning(
                        "Trigger grant refused",
                        extra={
                            "principal_id": str(principal_id),
                            "trigger": f"{kind.value}:{key}",
                            "stage": str(stage),
                            "error": str(exc),
                        },
                    )
            if kind.one_shot and fired:
                await self.durable.save_trigger_record(kind.value, key, principal_id)

        if work.recheck:
            await self._recheck_quests(principal_id)
        return granted

    async def _recheck_quests(self, principal_id: uuid.UUID) -> None:
        if not self.quest_host_enabled or self.quest_host is None:
            return
        try:
            await self.quest_host.request_recheck(principal_id)
        except Exception as exc:
            self.quest_host_enabled = False
            error = TriggerError(f"Quest host unavailable: {exc}")
            logger.error(
                "Quest host integration disabled",
                exc_info=error,
                extra={"principal_id": str(principal_id)},
            )
