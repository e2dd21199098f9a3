"""
Group Sync - shares stage sets across group members.

Each principal is in at most one group; a principal with no group acts
as its own singleton group. A SHARED group whose members all hold the
same set is LOCKSTEP, and from then on every grant or revoke on one
member is fanned out to the others. A group whose sets differ is
DIVERGED until they become equal again.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set

from stagegate.engines.groups.membership import MembershipChange, MembershipFeed
from stagegate.kernel.errors import AdmissionDenied
from stagegate.kernel.events.event_bus import EventBus
from stagegate.kernel.events.event_types import (
    BulkReason,
    BulkStagesChanged,
    StageCause,
    StageGranted,
    StageRevoked,
)
from stagegate.kernel.principals.store import PrincipalStore
from stagegate.kernel.stages.stage_id import StageId
from stagegate.logging_config import get_logger

logger = get_logger(__name__)


class GroupPolicy(str, Enum):
    SHARED = "shared"
    INDEPENDENT = "independent"


class AdmissionRule(str, Enum):
    EXACT = "exact"  # joiner's set must equal the group's
    MINIMUM = "minimum"  # joiner's set must contain the group's
    UNRESTRICTED = "unrestricted"


class LeavePolicy(str, Enum):
    RETAIN = "retain"
    RESET = "reset"


class Alignment(str, Enum):
    DIVERGED = "diverged"
    LOCKSTEP = "lockstep"


@dataclass
class Group:
    id: str
    policy: GroupPolicy
    members: Set[uuid.UUID] = field(default_factory=set)
    alignment: Alignment = Alignment.LOCKSTEP


class GroupSync:
    """
    Applies group policies to PrincipalStore.

    Usage:
        sync = GroupSync(store, bus)
        sync.attach()
        await sync.start(host.membership_change_feed())
    """

    def __init__(
        self,
        store: PrincipalStore,
        bus: EventBus,
        *,
        default_policy: GroupPolicy = GroupPolicy.SHARED,
        admission: AdmissionRule = AdmissionRule.UNRESTRICTED,
        leave_policy: LeavePolicy = LeavePolicy.RETAIN,
        adopt_on_join: bool = True,
    ):
        self.store = store
        self.bus = bus
        self.default_policy = GroupPolicy(default_policy)
        self.admission = AdmissionRule(admission)
        self.leave_policy = LeavePolicy(leave_policy)
        self.adopt_on_join = adopt_on_join
        self._groups: Dict[str, Group] = {}
        self._membership: Dict[uuid.UUID, str] = {}
        self._feed: Optional[MembershipFeed] = None

    def attach(self) -> None:
        self.bus.subscribe(StageGranted, self._on_granted)
        self.bus.subscribe(StageRevoked, self._on_revoked)
        self.bus.subscribe(BulkStagesChanged, self._on_bulk)

    async def start(self, feed: MembershipFeed) -> None:
        self._feed = feed
        await feed.start(self.on_membership_change)

    async def stop(self) -> None:
        if self._feed is not None:
            await self._feed.stop()
            self._feed = None

    # Lookup

    def group_of(self, principal_id: uuid.UUID) -> Optional[Group]:
        group_id = self._membership.get(principal_id)
        return self._groups.get(group_id) if group_id else None

    def groups(self) -> List[Group]:
        return list(self._groups.values())

    def members_of(self, principal_id: uuid.UUID) -> List[uuid.UUID]:
        """Point-in-time member list; a principal with no group is alone."""
        group = self.group_of(principal_id)
        return list(group.members) if group else [principal_id]

    def set_policy(self, group_id: str, policy: GroupPolicy) -> Group:
        group = self._ensure_group(group_id)
        group.policy = GroupPolicy(policy)
        self._realign(group)
        return group

    def _ensure_group(self, group_id: str) -> Group:
        group = self._groups.get(group_id)
        if group is None:
            group = self._groups[group_id] = Group(id=group_id, policy=self.default_policy)
        return group

    def reference_set(self, group: Group) -> FrozenSet[StageId]:
        """Stages every current member holds."""
        members = list(group.members)
        if not members:
            return frozenset()
        shared = set(self.store.stages(members[0]))
        for member in members[1:]:
            shared &= self.store.stages(member)
        return frozenset(shared)

    def _realign(self, group: Group) -> Alignment:
        sets = {self.store.stages(m) for m in list(group.members)}
        alignment = Alignment.LOCKSTEP if len(sets) <= 1 else Alignment.DIVERGED
        if alignment is not group.alignment:
            logger.info(
                "Group alignment changed",
                extra={"group_id": group.id, "alignment": alignment.value, "members": len(group.members)},
            )
            group.alignment = alignment
        return alignment

    # Membership

    def check_admission(self, principal_id: uuid.UUID, group: Group) -> None:
        if self.admission is AdmissionRule.UNRESTRICTED or not group.members:
            return
        held = self.store.stages(principal_id)
        reference = self.reference_set(group)
        if self.admission is AdmissionRule.EXACT and held != reference:
            raise AdmissionDenied(principal_id, group.id, self.admission.value)
        if self.admission is AdmissionRule.MINIMUM and not held >= reference:
            raise AdmissionDenied(principal_id, group.id, self.admission.value)

    async def join(self, principal_id: uuid.UUID, group_id: str) -> Group:
        """
        Add a principal to a group, leaving any previous one.

        Raises:
            AdmissionDenied: the admission rule rejects the principal's set
        """
        current = self._membership.get(principal_id)
        if current == group_id:
            return self._groups[group_id]

        group = self._ensure_group(group_id)
        try:
            self.check_admission(principal_id, group)
        except AdmissionDenied:
            if not group.members:
                del self._groups[group_id]
            raise

        if current is not None:
            await self.leave(principal_id)

        adopt = (
            self.adopt_on_join
            and group.policy is GroupPolicy.SHARED
            and group.alignment is Alignment.LOCKSTEP
            and bool(group.members)
        )
        stages = self.reference_set(group) if adopt else self.store.stages(principal_id)
        group.members.add(principal_id)
        self._membership[principal_id] = group_id

        await self.store.replace(principal_id, stages, cause=StageCause.GROUP_SYNC, reason=BulkReason.GROUP_JOIN)
        self._realign(group)
        logger.info(
            "Principal joined group",
            extra={"principal_id": str(principal_id), "group_id": group_id, "adopted": adopt},
        )
        return group

    async def leave(self, principal_id: uuid.UUID) -> None:
        group_id = self._membership.pop(principal_id, None)
        if group_id is None:
            return
        group = self._groups[group_id]
        group.members.discard(principal_id)
        if not group.members:
            del self._groups[group_id]
        else:
            self._realign(group)

        stages = frozenset() if self.leave_policy is LeavePolicy.RESET else self.store.stages(principal_id)
        await self.store.replace(principal_id, stages, cause=StageCause.GROUP_SYNC, reason=BulkReason.GROUP_LEAVE)
        logger.info(
            "Principal left group",
            extra={"principal_id": str(principal_id), "group_id": group_id, "policy": self.leave_policy.value},
        )

    def forget(self, principal_id: uuid.UUID) -> None:
        """Drop membership on disconnect without applying the leave policy."""
        group_id = self._membership.pop(principal_id, None)
        group = self._groups.get(group_id) if group_id else None
        if group is None:
            return
        group.members.discard(principal_id)
        if not group.members:
            del self._groups[group_id]
        else:
            self._realign(group)

    async def on_membership_change(self, change: MembershipChange) -> None:
        try:
            if change.is_leave:
                await self.leave(change.principal_id)
            else:
                await self.join(change.principal_id, change.group_id)
        except AdmissionDenied as exc:
            logger.warning(
                "Group admission denied",
                extra={"principal_id": str(change.principal_id), "group_id": change.group_id, "rule": exc.rule},
            )

    # Fan-out

    def _fan_out_targets(self, principal_id: uuid.UUID) -> Optional[List[uuid.UUID]]:
        group = self.group_of(principal_id)
        if group is None or group.policy is not GroupPolicy.SHARED:
            return None
        if group.alignment is not Alignment.LOCKSTEP:
            self._realign(group)
            return None
        return [m for m in list(group.members) if m != principal_id]

    async def _on_granted(self, event: StageGranted) -> None:
        if event.cause is StageCause.GROUP_SYNC:
            return
        targets = self._fan_out_targets(event.principal_id)
        if targets is None:
            return
        for member in targets:
            await self.store.apply_grants(member, [event.stage], StageCause.GROUP_SYNC)
        self._realign_for(event.principal_id)

    async def _on_revoked(self, event: StageRevoked) -> None:
        if event.cause is StageCause.GROUP_SYNC:
            return
        targets = self._fan_out_targets(event.principal_id)
        if targets is None:
            return
        for member in targets:
            await self.store.apply_revokes(member, [event.stage], StageCause.GROUP_SYNC)
        self._realign_for(event.principal_id)

    async def _on_bulk(self, event: BulkStagesChanged) -> None:
        if event.cause is StageCause.GROUP_SYNC or event.reason is not BulkReason.REPLACE:
            return
        targets = self._fan_out_targets(event.principal_id)
        if targets is None:
            return
        for member in targets:
            await self.store.replace(member, event.stages, cause=StageCause.GROUP_SYNC, reason=BulkReason.GROUP_SYNC)
        self._realign_for(event.principal_id)

    def _realign_for(self, principal_id: uuid.UUID) -> None:
        group = self.group_of(principal_id)
        if group is not None:
            self._realign(group)
