"""
Server-authoritative replication of stage state to observers.

Mutations are recorded per principal while the PrincipalStore holds that
principal's lock (no I/O happens there). flush() runs once per processing
cycle and turns each principal's pending record into at most one state
message per observer: a StageSetSnapshot after a bulk change or a failed
delivery, otherwise a single delta (or a batch carrying the net operation
per stage).
"""

import asyncio
import inspect
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

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
from stagegate.engines.replication.observer import Observer
from stagegate.kernel.errors import ReplicationError
from stagegate.kernel.events.event_types import (
    BaseEvent,
    BulkStagesChanged,
    BypassChanged,
    StageGranted,
    StageRevoked,
)
from stagegate.kernel.principals.store import PrincipalStore
from stagegate.kernel.stages.definitions import ResourceKind
from stagegate.kernel.stages.graph import StageGraph
from stagegate.kernel.stages.stage_id import StageId
from stagegate.logging_config import get_logger

logger = get_logger(__name__)

ReconcileListener = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class _Pending:
    snapshot: bool = False
    ops: "OrderedDict[StageId, DeltaOp]" = field(default_factory=OrderedDict)
    bypass: Optional[bool] = None

    def is_empty(self) -> bool:
        return not self.snapshot and not self.ops and self.bypass is None


@dataclass(eq=False)
class _Subscription:
    observer: Observer
    needs_resync: bool = False


class ReplicationProtocol:
    """
    Pushes authoritative state to per-principal observers.

    Usage:
        replication = ReplicationProtocol(store, graph)
        replication.attach()
        await replication.connect(principal_id, observer)
        ...
        await replication.flush()  # once per processing cycle
    """

    def __init__(
        self,
        store: PrincipalStore,
        graph: StageGraph,
        *,
        lock_table_kinds: Sequence[ResourceKind] = (ResourceKind.ITEM,),
        reconcile_debounce_seconds: float = 0.25,
    ):
        self.store = store
        self.graph = graph
        self.lock_table_kinds = [ResourceKind(k) for k in lock_table_kinds]
        self.reconcile_debounce_seconds = reconcile_debounce_seconds
        self._subscriptions: Dict[uuid.UUID, List[_Subscription]] = {}
        self._pending: Dict[uuid.UUID, _Pending] = {}
        self._flush_lock = asyncio.Lock()
        self._reconcile_listeners: List[ReconcileListener] = []
        self._reconcile_handle: Optional[asyncio.TimerHandle] = None
        self.reconcile_count = 0
        self.delivery_failures = 0

    def attach(self) -> None:
        self.store.on_change(self.record)

    # Observers

    def observers(self, principal_id: uuid.UUID) -> List[Observer]:
        return [s.observer for s in self._subscriptions.get(principal_id, [])]

    def connected(self) -> List[uuid.UUID]:
        return [p for p, subs in self._subscriptions.items() if subs]

    async def connect(self, principal_id: uuid.UUID, observer: Observer) -> None:
        """Attach an observer and send it the full state."""
        subscription = _Subscription(observer)
        self._subscriptions.setdefault(principal_id, []).append(subscription)
        await self._deliver(principal_id, subscription, self.full_snapshot(principal_id))
        logger.info("Observer connected", extra={"principal_id": str(principal_id)})

    def disconnect(self, principal_id: uuid.UUID, observer: Observer) -> None:
        subscriptions = self._subscriptions.get(principal_id, [])
        remaining = [s for s in subscriptions if s.observer is not observer]
        if remaining:
            self._subscriptions[principal_id] = remaining
        else:
            self._subscriptions.pop(principal_id, None)
            self._pending.pop(principal_id, None)

    # Message construction

    def definitions_message(self) -> StageDefinitionsSnapshot:
        return StageDefinitionsSnapshot(
            definitions=[DefinitionPayload.from_definition(d) for d in self.graph.definitions()]
        )

    def lock_table_messages(self) -> List[LockTableSnapshot]:
        return [
            LockTableSnapshot(resource_kind=kind, entries=self.store.lock_table(kind))
            for kind in self.lock_table_kinds
        ]

    def stage_set_message(self, principal_id: uuid.UUID) -> StageSetSnapshot:
        return StageSetSnapshot(principal_id=principal_id, stages=sorted(self.store.stages(principal_id)))

    def full_snapshot(self, principal_id: uuid.UUID) -> List[BaseModel]:
        messages: List[BaseModel] = [self.definitions_message()]
        messages.append(self.stage_set_message(principal_id))
        messages.extend(self.lock_table_messages())
        messages.append(BypassFlag(principal_id=principal_id, active=self.store.is_bypassing(principal_id)))
        return messages

    # Recording (called under the principal's mutation lock)

    def record(self, event: BaseEvent) -> None:
        principal_id = event.principal_id
        if not self._subscriptions.get(principal_id):
            return
        pending = self._pending.get(principal_id)
        if pending is None:
            pending = self._pending[principal_id] = _Pending()

        if isinstance(event, BulkStagesChanged):
            pending.snapshot = True
            pending.ops.clear()
        elif isinstance(event, (StageGranted, StageRevoked)):
            if pending.snapshot:
                return
            op = DeltaOp.ADD if isinstance(event, StageGranted) else DeltaOp.REMOVE
            pending.ops.pop(event.stage, None)
            pending.ops[event.stage] = op
        elif isinstance(event, BypassChanged):
            pending.bypass = event.active

    # Delivery

    async def flush(self) -> int:
        """Deliver everything recorded since the last flush. Returns messages sent."""
        async with self._flush_lock:
            pending, self._pending = self._pending, {}
            sent = 0
            changed = False
            for principal_id, record in pending.items():
                if record.is_empty():
                    continue
                for subscription in list(self._subscriptions.get(principal_id, [])):
                    messages = self._messages_for(principal_id, record, subscription)
                    if await self._deliver(principal_id, subscription, messages):
                        sent += len(messages)
                changed = True
            if changed:
                self.request_reconcile()
            return sent

    def _messages_for(self, principal_id: uuid.UUID, record: _Pending,
                      subscription: _Subscription) -> List[BaseModel]:
        messages: List[BaseModel] = []
        if subscription.needs_resync:
            messages.extend(self.full_snapshot(principal_id))
            return messages
        if record.snapshot:
            messages.append(self.stage_set_message(principal_id))
        elif len(record.ops) == 1:
            stage, op = next(iter(record.ops.items()))
            messages.append(StageDelta(principal_id=principal_id, op=op, stage=stage))
        elif record.ops:
            messages.append(StageDeltaBatch(
                principal_id=principal_id,
                deltas=[StageDelta(principal_id=principal_id, op=op, stage=s) for s, op in record.ops.items()],
            ))
        if record.bypass is not None:
            messages.append(BypassFlag(principal_id=principal_id, active=record.bypass))
        return messages

    async def _deliver(self, principal_id: uuid.UUID, subscription: _Subscription,
                       messages: List[BaseModel]) -> bool:
        try:
            for message in messages:
                try:
                    await subscription.observer.send(message)
                except Exception as exc:
                    raise ReplicationError(f"Delivery to observer failed: {exc}") from exc
        except ReplicationError:
            subscription.needs_resync = True
            self.delivery_failures += 1
            logger.warning(
                "Replication delivery failed, observer marked for resync",
                exc_info=True,
                extra={"principal_id": str(principal_id)},
            )
            return False
        subscription.needs_resync = False
        return True

    async def broadcast_definitions(self) -> int:
        """Re-send definitions and lock tables to every observer, e.g. after a reload."""
        messages: List[BaseModel] = [self.definitions_message()]
        messages.extend(self.lock_table_messages())
        sent = 0
        for principal_id in self.connected():
            for subscription in list(self._subscriptions.get(principal_id, [])):
                if await self._deliver(principal_id, subscription, messages):
                    sent += len(messages)
        self.request_reconcile()
        return sent

    async def resync(self, principal_id: uuid.UUID) -> None:
        for subscription in list(self._subscriptions.get(principal_id, [])):
            await self._deliver(principal_id, subscription, self.full_snapshot(principal_id))

    # Reconciliation

    def add_reconcile_listener(self, listener: ReconcileListener) -> None:
        self._reconcile_listeners.append(listener)

    def request_reconcile(self) -> None:
        """Trailing debounce: listeners run once after changes stop for the window."""
        if not self._reconcile_listeners:
            return
        loop = asyncio.get_running_loop()
        if self._reconcile_handle is not None:
            self._reconcile_handle.cancel()
        self._reconcile_handle = loop.call_later(self.reconcile_debounce_seconds, self._fire_reconcile)

    def _fire_reconcile(self) -> None:
        self._reconcile_handle = None
        self.reconcile_count += 1
        asyncio.get_running_loop().create_task(self._run_reconcile())

    async def _run_reconcile(self) -> None:
        for listener in list(self._reconcile_listeners):
            try:
                result = listener()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Reconcile listener failed")

    def cancel_pending_reconcile(self) -> None:
        if self._reconcile_handle is not None:
            self._reconcile_handle.cancel()
            self._reconcile_handle = None
