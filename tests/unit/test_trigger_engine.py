"""Unit tests for automatic grants from external events."""

import uuid

import pytest

from stagegate.engines.triggers.trigger_engine import TriggerEngine, TriggerKind, TriggerRule
from stagegate.kernel.events.event_types import StageCause, StageGranted
from stagegate.kernel.stages.stage_id import StageId


def sid(raw: str) -> StageId:
    return StageId.parse(raw)


class RecordingQuestHost:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def request_recheck(self, principal_id):
        self.calls.append(principal_id)
        if self.fail:
            raise ConnectionError("quest host offline")


RULES = [
    TriggerRule(kind=TriggerKind.REGION_ENTRY, key="base:the_nether", stage=sid("nether")),
    TriggerRule(kind=TriggerKind.ENTITY_DEFEAT, key="base:dragon", stage=sid("end")),
    TriggerRule(kind=TriggerKind.POSSESSION, key="base:iron_ingot", stage=sid("iron")),
    TriggerRule(kind=TriggerKind.ACHIEVEMENT, key="story/mine_diamond", stage=sid("iron")),
]


@pytest.fixture
def engine(make_engine, make_stage):
    return make_engine([
        make_stage("iron"),
        make_stage("nether", ["iron"]),
        make_stage("end", ["nether"]),
        make_stage("orphan", ["ghost"]),
    ])


def build_triggers(engine, **options) -> TriggerEngine:
    triggers = TriggerEngine(engine.store, engine.durable, engine.bus, **options)
    triggers.load(RULES)
    triggers.attach()
    return triggers


class TestTriggerRules:
    """Tests for rule loading and lookup."""

    def test_keys_are_normalized(self, engine):
        triggers = build_triggers(engine)
        assert triggers.stages_for(TriggerKind.REGION_ENTRY, "The_Nether") == [sid("nether")]
        assert triggers.stages_for("achievement", "story/mine_diamond") == [sid("iron")]
        assert triggers.stages_for(TriggerKind.POSSESSION, "base:dirt") == []

    def test_duplicate_rules_collapse(self, engine):
        triggers = TriggerEngine(engine.store, engine.durable, engine.bus)
        assert triggers.load(RULES + RULES[:1]) == len(RULES)
        assert len(triggers.rules()) == len(RULES)


class TestProcessing:
    """Tests for process_cycle."""

    async def test_region_entry_grants_with_cause(self, engine, principal_id):
        triggers = build_triggers(engine)
        triggers.notify(principal_id, TriggerKind.REGION_ENTRY, "base:the_nether")
        report = await triggers.process_cycle()
        assert report.processed == 1
        assert report.granted == 2
        assert engine.store.stages(principal_id) == {sid("iron"), sid("nether")}
        assert {e.cause for e in engine.recorder.of(StageGranted)} == {StageCause.REGION_ENTRY}

    async def test_one_shot_fires_once_across_restarts(self, engine, principal_id):
        """A fired one-shot trigger is durable; a fresh engine does not re-fire it."""
        triggers = build_triggers(engine)
        triggers.notify(principal_id, TriggerKind.ENTITY_DEFEAT, "base:dragon")
        await triggers.process_cycle()
        assert ("entity_defeat", "base:dragon", principal_id) in engine.durable.trigger_records

        await engine.store.revoke(principal_id, "end")
        restarted = build_triggers(engine)
        restarted.notify(principal_id, TriggerKind.ENTITY_DEFEAT, "base:dragon")
        report = await restarted.process_cycle()
        assert report.granted == 0
        assert not engine.store.has(principal_id, "end")

    async def test_recurring_trigger_regrants(self, engine, principal_id):
        triggers = build_triggers(engine)
        triggers.notify_possession(principal_id, ["base:iron_ingot", "base:dirt"])
        await triggers.process_cycle()
        await engine.store.revoke(principal_id, "iron")

        triggers.notify_possession(principal_id, ["base:iron_ingot"])
        report = await triggers.process_cycle()
        assert report.granted == 1
        assert engine.store.has(principal_id, "iron")

    async def test_failed_grant_does_not_record_one_shot(self, engine, principal_id):
        triggers = TriggerEngine(engine.store, engine.durable, engine.bus)
        triggers.load([TriggerRule(kind=TriggerKind.REGION_ENTRY, key="base:void", stage=sid("orphan"))])
        triggers.notify(principal_id, TriggerKind.REGION_ENTRY, "base:void")
        report = await triggers.process_cycle()
        assert report.granted == 0
        assert engine.durable.trigger_records == set()

    async def test_budget_carries_over(self, engine):
        triggers = build_triggers(engine, budget_per_cycle=2)
        principals = [uuid.uuid4() for _ in range(5)]
        for principal in principals:
            triggers.notify(principal, TriggerKind.POSSESSION, "base:iron_ingot")

        report = await triggers.process_cycle()
        assert report.processed == 2
        assert report.carried_over == 3
        assert len(triggers.pending()) == 3

        await triggers.process_cycle()
        await triggers.process_cycle()
        assert triggers.pending() == []
        assert all(engine.store.has(p, "iron") for p in principals)

    async def test_events_for_same_principal_merge(self, engine, principal_id):
        triggers = build_triggers(engine, budget_per_cycle=1)
        triggers.notify(principal_id, TriggerKind.POSSESSION, "base:iron_ingot")
        triggers.notify(principal_id, TriggerKind.REGION_ENTRY, "base:the_nether")
        report = await triggers.process_cycle()
        assert report.processed == 1
        assert engine.store.stages(principal_id) == {sid("iron"), sid("nether")}


class TestQuestHost:
    """Tests for quest re-evaluation after stage changes."""

    async def test_stage_change_requests_recheck(self, engine, principal_id):
        host = RecordingQuestHost()
        triggers = build_triggers(engine, quest_host=host)
        await engine.store.grant(principal_id, "iron", StageCause.COMMAND)
        await triggers.process_cycle()
        assert host.calls == [principal_id]

    async def test_recheck_during_evaluation_is_deferred(self, engine, principal_id):
        """Grants made by a trigger queue their recheck for the next cycle."""
        host = RecordingQuestHost()
        triggers = build_triggers(engine, quest_host=host)
        triggers.notify(principal_id, TriggerKind.POSSESSION, "base:iron_ingot")
        report = await triggers.process_cycle()
        assert report.deferred == 1
        assert host.calls == []

        await triggers.process_cycle()
        assert host.calls == [principal_id]

    async def test_failing_host_is_disabled(self, engine, principal_id):
        host = RecordingQuestHost(fail=True)
        triggers = build_triggers(engine, quest_host=host)
        await engine.store.grant(principal_id, "iron")
        await triggers.process_cycle()
        assert triggers.quest_host_enabled is False

        await engine.store.grant(principal_id, "nether")
        await triggers.process_cycle()
        assert len(host.calls) == 1

    async def test_no_host_no_recheck(self, engine, principal_id):
        triggers = build_triggers(engine)
        await engine.store.grant(principal_id, "iron")
        assert triggers.pending() == []
