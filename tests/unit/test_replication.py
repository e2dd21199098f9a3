"""Unit tests for the replication protocol and the observer cache."""

import asyncio
import uuid

import pytest

from stagegate.engines.replication.messages import (
    BypassFlag,
    DeltaOp,
    LockTableSnapshot,
    StageDefinitionsSnapshot,
    StageDelta,
    StageDeltaBatch,
    StageSetSnapshot,
    decode_message,
    encode_message,
)
from stagegate.engines.replication.observer import ObserverCache
from stagegate.engines.replication.protocol import ReplicationProtocol
from stagegate.kernel.events.event_types import StageCause
from stagegate.kernel.rules.catalog import Resource
from stagegate.kernel.stages.definitions import ResourceKind
from stagegate.kernel.stages.stage_id import StageId

ITEM = ResourceKind.ITEM


def sid(raw: str) -> StageId:
    return StageId.parse(raw)


class FailingObserver(ObserverCache):
    """Observer whose sends fail while `broken` is set."""

    def __init__(self):
        super().__init__()
        self.broken = False

    async def send(self, message):
        if self.broken:
            raise ConnectionError("socket gone")
        await super().send(message)


@pytest.fixture
def setup(make_engine, make_stage):
    engine = make_engine([
        make_stage("base", items=["base:stone_pick"]),
        make_stage("mid", ["base"], names=["alloy"]),
        make_stage("late", ["mid"]),
    ])
    engine.catalog.add_all([Resource.of(ITEM, "base:stone_pick"), Resource.of(ITEM, "base:alloy_bar")])
    replication = ReplicationProtocol(engine.store, engine.graph, reconcile_debounce_seconds=0.01)
    replication.attach()
    return engine, replication


class TestSnapshots:
    """Tests for connect and full-state delivery."""

    async def test_connect_sends_full_snapshot(self, setup, principal_id):
        engine, replication = setup
        await engine.store.grant(principal_id, "base")
        observer = ObserverCache(principal_id)
        await replication.connect(principal_id, observer)

        assert [type(m) for m in observer.received] == [
            StageDefinitionsSnapshot,
            StageSetSnapshot,
            LockTableSnapshot,
            BypassFlag,
        ]
        assert observer.stages == {sid("base")}
        assert set(observer.definitions) == {sid("base"), sid("mid"), sid("late")}
        assert observer.lock_tables[ITEM] == {"base:stone_pick": sid("base"), "base:alloy_bar": sid("mid")}
        assert observer.is_locked(ITEM, "base:alloy_bar")
        assert not observer.is_locked(ITEM, "base:stone_pick")

    async def test_bulk_change_sends_set_snapshot(self, setup, principal_id):
        engine, replication = setup
        observer = ObserverCache(principal_id)
        await replication.connect(principal_id, observer)
        await engine.store.grant(principal_id, "base")
        await engine.store.replace(principal_id, ["late"], StageCause.COMMAND)

        await replication.flush()
        assert isinstance(observer.received[-1], StageSetSnapshot)
        assert observer.count(StageDelta) == 0
        assert observer.stages == {sid("late")}


class TestDeltas:
    """Tests for coalesced delta delivery."""

    async def test_single_change_sends_single_delta(self, setup, principal_id):
        engine, replication = setup
        observer = ObserverCache(principal_id)
        await replication.connect(principal_id, observer)
        await engine.store.grant(principal_id, "base")

        assert await replication.flush() == 1
        delta = observer.received[-1]
        assert isinstance(delta, StageDelta)
        assert delta.op is DeltaOp.ADD
        assert observer.stages == {sid("base")}

    async def test_changes_in_one_cycle_are_batched(self, setup, principal_id):
        engine, replication = setup
        observer = ObserverCache(principal_id)
        await replication.connect(principal_id, observer)
        await engine.store.grant(principal_id, "late")

        assert await replication.flush() == 1
        batch = observer.received[-1]
        assert isinstance(batch, StageDeltaBatch)
        assert [d.stage for d in batch.deltas] == [sid("base"), sid("mid"), sid("late")]
        assert observer.stages == {sid("base"), sid("mid"), sid("late")}

    async def test_net_operation_per_stage(self, setup, principal_id):
        """Grant then revoke within one cycle delivers only the final state."""
        engine, replication = setup
        observer = ObserverCache(principal_id)
        await replication.connect(principal_id, observer)
        await engine.store.grant(principal_id, "base")
        await engine.store.revoke(principal_id, "base")

        await replication.flush()
        delta = observer.received[-1]
        assert isinstance(delta, StageDelta)
        assert delta.op is DeltaOp.REMOVE
        assert observer.stages == frozenset()

    async def test_nothing_to_send(self, setup, principal_id):
        engine, replication = setup
        observer = ObserverCache(principal_id)
        await replication.connect(principal_id, observer)
        assert await replication.flush() == 0

    async def test_principal_without_observer_not_recorded(self, setup, principal_id):
        engine, replication = setup
        await engine.store.grant(principal_id, "base")
        assert await replication.flush() == 0

    async def test_bypass_flag_delivered(self, setup, principal_id):
        engine, replication = setup
        observer = ObserverCache(principal_id)
        await replication.connect(principal_id, observer)
        await engine.store.set_bypass(principal_id, True)
        await replication.flush()
        assert observer.bypass is True
        assert not observer.is_locked(ITEM, "base:alloy_bar")


class TestFailureRecovery:
    """Tests for resync after failed delivery."""

    async def test_failed_delivery_triggers_full_resync(self, setup, principal_id):
        engine, replication = setup
        observer = FailingObserver()
        await replication.connect(principal_id, observer)

        observer.broken = True
        await engine.store.grant(principal_id, "base")
        assert await replication.flush() == 0
        assert replication.delivery_failures == 1

        observer.broken = False
        await engine.store.grant(principal_id, "mid")
        await replication.flush()
        assert isinstance(observer.received[-1], BypassFlag)
        assert observer.count(StageDefinitionsSnapshot) == 2
        assert observer.stages == {sid("base"), sid("mid")}

    async def test_manual_resync(self, setup, principal_id):
        engine, replication = setup
        observer = ObserverCache(principal_id)
        await replication.connect(principal_id, observer)
        await replication.resync(principal_id)
        assert observer.count(StageSetSnapshot) == 2

    async def test_disconnect_stops_delivery(self, setup, principal_id):
        engine, replication = setup
        observer = ObserverCache(principal_id)
        await replication.connect(principal_id, observer)
        replication.disconnect(principal_id, observer)
        await engine.store.grant(principal_id, "base")
        assert await replication.flush() == 0
        assert replication.connected() == []


class TestReconcile:
    """Tests for the debounced reconcile notification."""

    async def test_bursts_collapse_to_one_reconcile(self, setup):
        engine, replication = setup
        calls = []
        replication.add_reconcile_listener(lambda: calls.append(1))
        for _ in range(5):
            replication.request_reconcile()
        await asyncio.sleep(0.05)
        assert calls == [1]
        assert replication.reconcile_count == 1

    async def test_flush_with_changes_requests_reconcile(self, setup, principal_id):
        engine, replication = setup
        calls = []

        async def listener():
            calls.append(1)

        replication.add_reconcile_listener(listener)
        await replication.connect(principal_id, ObserverCache(principal_id))
        await engine.store.grant(principal_id, "base")
        await replication.flush()
        await asyncio.sleep(0.05)
        assert calls == [1]

    async def test_cancel_pending_reconcile(self, setup):
        engine, replication = setup
        calls = []
        replication.add_reconcile_listener(lambda: calls.append(1))
        replication.request_reconcile()
        replication.cancel_pending_reconcile()
        await asyncio.sleep(0.05)
        assert calls == []


class TestMessages:
    """Tests for the JSON wire form."""

    def test_decode_dispatches_on_type(self, principal_id):
        message = StageDeltaBatch(
            principal_id=principal_id,
            deltas=[StageDelta(principal_id=principal_id, op=DeltaOp.ADD, stage=sid("mid"))],
        )
        decoded = decode_message(encode_message(message))
        assert isinstance(decoded, StageDeltaBatch)
        assert decoded.deltas[0].stage == sid("mid")

    def test_lock_table_serializes_stage_ids(self):
        message = LockTableSnapshot(resource_kind=ITEM, entries={"base:x": sid("mid")})
        assert '"stagegate:mid"' in encode_message(message)
