"""
Application context.

StageContext constructs and owns every engine component and drives the
processing cycle. Nothing in the package holds module-level engine state;
the FastAPI app keeps one context on app.state.
"""

import asyncio
import uuid
from typing import FrozenSet, Iterable, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from stagegate.config import Settings
from stagegate.engines.groups.group_sync import AdmissionRule, GroupPolicy, GroupSync, LeavePolicy
from stagegate.engines.groups.membership import GroupHost, MembershipFeed, PollingMembershipFeed
from stagegate.engines.replication.observer import Observer
from stagegate.engines.replication.protocol import ReplicationProtocol
from stagegate.engines.triggers.quest_host import QuestHost
from stagegate.engines.triggers.trigger_engine import TriggerEngine, TriggerKind, TriggerRule
from stagegate.kernel.errors import AdmissionDenied, ConfigError, StageGateError
from stagegate.kernel.events.event_bus import EventBus
from stagegate.kernel.events.event_store import AuditTrail
from stagegate.kernel.events.event_types import BulkReason, StageCause
from stagegate.kernel.persistence.durable import Durable, InMemoryDurable, SqlDurable
from stagegate.kernel.principals.store import PrincipalStore
from stagegate.kernel.rules.cache import ResolutionCache
from stagegate.kernel.rules.catalog import Resource, ResourceCatalog
from stagegate.kernel.rules.registry import RuleRegistry
from stagegate.kernel.stages.definitions import ResourceKind, StageDefinition
from stagegate.kernel.stages.graph import BypassTokens, GrantPolicy, RevokePolicy, StageGraph
from stagegate.kernel.stages.stage_id import InvalidStageId, StageId
from stagegate.loader.stage_loader import StageLoader, load_catalog, load_triggers
from stagegate.logging_config import get_logger

logger = get_logger(__name__)


class StageContext:
    """
    Wiring for one running stage gate.

    Usage:
        context = StageContext(settings, session_maker=async_session_maker)
        context.load_from_settings()
        await context.start()
        await context.connect(principal_id, observer)
    """

    def __init__(
        self,
        settings: Settings,
        *,
        durable: Optional[Durable] = None,
        session_maker: Optional[async_sessionmaker] = None,
        group_host: Optional[GroupHost] = None,
        quest_host: Optional[QuestHost] = None,
    ):
        self.settings = settings
        self.bus = EventBus()
        self.catalog = ResourceCatalog()
        self.graph = StageGraph()
        self.registry = RuleRegistry(self.catalog)
        self.cache = ResolutionCache(self.registry, settings.resolution_cache_size)
        if durable is None:
            durable = SqlDurable(session_maker) if session_maker is not None else InMemoryDurable()
        self.durable = durable
        self.bypass_tokens = BypassTokens(window_seconds=settings.bypass_window_seconds)

        self.store = PrincipalStore(
            self.graph,
            self.cache,
            self.bus,
            self.durable,
            grant_policy=GrantPolicy(settings.grant_policy),
            revoke_policy=RevokePolicy.CASCADE_DEPENDENTS if settings.revoke_cascade else RevokePolicy.NO_CASCADE,
            bypass_tokens=self.bypass_tokens,
        )

        self.replication = ReplicationProtocol(
            self.store,
            self.graph,
            lock_table_kinds=[ResourceKind(k) for k in settings.lock_table_kinds],
            reconcile_debounce_seconds=settings.reconcile_debounce_seconds,
        )
        self.replication.attach()

        self.groups = GroupSync(
            self.store,
            self.bus,
            default_policy=GroupPolicy(settings.default_group_policy),
            admission=AdmissionRule(settings.group_admission),
            leave_policy=LeavePolicy(settings.leave_policy),
            adopt_on_join=settings.adopt_group_stages_on_join,
        )
        self.groups.attach()

        self.triggers = TriggerEngine(
            self.store,
            self.durable,
            self.bus,
            budget_per_cycle=settings.trigger_budget_per_cycle,
            quest_host=quest_host,
        )
        self.triggers.attach()

        self.audit: Optional[AuditTrail] = None
        if session_maker is not None:
            self.audit = AuditTrail(session_maker)
            self.audit.attach(self.bus)

        self.group_host = group_host
        self.load_errors: List[ConfigError] = []
        self._task: Optional[asyncio.Task] = None

    # Definitions

    def load_definitions(
        self,
        definitions: Iterable[StageDefinition],
        triggers: Optional[Iterable[TriggerRule]] = None,
        resources: Optional[Iterable[Resource]] = None,
    ) -> List[ConfigError]:
        """Swap in new definitions; graph and rule index change together."""
        errors = self.graph.replace_all(definitions)
        if resources is not None:
            self.catalog.add_all(resources)
        self.registry.load(self.graph.definitions())
        if triggers is not None:
            self.triggers.load(triggers)

        for problem in self.graph.validate():
            logger.error(
                "Stage graph error",
                extra={"stage": str(problem.stage_id), "kind": problem.kind, "detail": str(problem)},
            )
        logger.info(
            "Definitions active",
            extra={"stages": len(self.graph), "epoch": self.registry.epoch, "skipped": len(errors)},
        )
        return errors

    def load_from_settings(self) -> List[ConfigError]:
        errors: List[ConfigError] = []
        definitions: List[StageDefinition] = []
        triggers: Optional[List[TriggerRule]] = None
        resources: Optional[List[Resource]] = None

        if self.settings.stage_directory:
            result = StageLoader(self.settings.stage_directory).load()
            definitions, errors = result.definitions, list(result.errors)
        if self.settings.trigger_file:
            try:
                triggers, trigger_errors = load_triggers(self.settings.trigger_file)
                errors.extend(trigger_errors)
            except ConfigError as error:
                errors.append(error)
        if self.settings.catalog_file:
            try:
                resources, catalog_errors = load_catalog(self.settings.catalog_file)
                errors.extend(catalog_errors)
            except ConfigError as error:
                errors.append(error)

        errors.extend(self.load_definitions(definitions, triggers, resources))
        self.load_errors = errors
        return errors

    async def reload(self) -> List[ConfigError]:
        """Reload from disk and republish to every loaded principal."""
        errors = self.load_from_settings()
        for principal_id in self.store.principals():
            await self.store.replace(
                principal_id,
                self.store.stages(principal_id),
                cause=StageCause.AUTO,
                reason=BulkReason.RELOAD,
            )
        await self.replication.broadcast_definitions()
        return errors

    def starting_stages(self) -> List[StageId]:
        stages = []
        for raw in self.settings.starting_stages:
            try:
                stages.append(StageId.parse(raw))
            except InvalidStageId:
                logger.warning("Ignoring invalid starting stage", extra={"stage": raw})
        return stages

    # Principal lifecycle

    async def connect(self, principal_id: uuid.UUID, observer: Optional[Observer] = None) -> FrozenSet[StageId]:
        """
        Bring a principal online: load durable state, grant starting stages
        on first connect, join its group and send observers a full snapshot.
        """
        held = await self.store.load(principal_id, reason=BulkReason.CONNECT)

        if not held:
            for stage in self.starting_stages():
                try:
                    await self.store.grant(principal_id, stage, StageCause.STARTING_STAGE, bypass_dependencies=True)
                except StageGateError as exc:
                    logger.warning(
                        "Starting stage not granted",
                        extra={"principal_id": str(principal_id), "stage": str(stage), "error": str(exc)},
                    )

        if self.group_host is not None:
            group_id = self.group_host.get_group(principal_id)
            if group_id:
                try:
                    await self.groups.join(principal_id, group_id)
                except AdmissionDenied as exc:
                    logger.warning(
                        "Group admission denied on connect",
                        extra={"principal_id": str(principal_id), "group_id": group_id, "rule": exc.rule},
                    )

        if observer is not None:
            await self.replication.connect(principal_id, observer)
        return self.store.stages(principal_id)

    async def disconnect(self, principal_id: uuid.UUID, observer: Optional[Observer] = None) -> None:
        if observer is not None:
            self.replication.disconnect(principal_id, observer)
        if self.replication.observers(principal_id):
            return
        self.groups.forget(principal_id)
        await self.store.unload(principal_id)

    def notify(self, principal_id: uuid.UUID, kind: TriggerKind, key: str) -> None:
        self.triggers.notify(principal_id, kind, key)

    # Processing cycle

    async def run_cycle(self) -> None:
        await self.triggers.process_cycle()
        await self.replication.flush()
        await self.store.flush()

    async def _run(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Processing cycle failed")
            await asyncio.sleep(self.settings.cycle_interval_seconds)

    def _membership_feed(self) -> Optional[MembershipFeed]:
        if self.group_host is None:
            return None
        interval = self.settings.membership_poll_interval_seconds
        if interval > 0:
            return PollingMembershipFeed(self.group_host.get_group, self.store.principals, interval)
        return self.group_host.membership_change_feed()

    async def start(self) -> None:
        feed = self._membership_feed()
        if feed is not None:
            await self.groups.start(feed)
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        logger.info("Stage context started", extra={"stages": len(self.graph)})

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.groups.stop()
        self.replication.cancel_pending_reconcile()
        await self.replication.flush()
        await self.store.flush()
        logger.info("Stage context stopped")
