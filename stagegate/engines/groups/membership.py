"""
Group membership detection.

GroupSync consumes MembershipChange values from a MembershipFeed and never
learns how they were detected. A host that emits change events uses
PushMembershipFeed; a host that can only be queried is wrapped in
PollingMembershipFeed, which diffs snapshots on a fixed interval.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from stagegate.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MembershipChange:
    """principal moved from previous_group to group (None means no group)."""

    principal_id: uuid.UUID
    group_id: Optional[str]
    previous_group_id: Optional[str] = None

    @property
    def is_leave(self) -> bool:
        return self.group_id is None


MembershipSink = Callable[[MembershipChange], Awaitable[None]]


@runtime_checkable
class MembershipFeed(Protocol):
    async def start(self, sink: MembershipSink) -> None:
        ...

    async def stop(self) -> None:
        ...


@runtime_checkable
class GroupHost(Protocol):
    def get_group(self, principal_id: uuid.UUID) -> Optional[str]:
        ...

    def membership_change_feed(self) -> MembershipFeed:
        ...


class PushMembershipFeed:
    """Feed for hosts that announce changes. Changes pushed before start() are buffered."""

    def __init__(self):
        self._sink: Optional[MembershipSink] = None
        self._pending: List[MembershipChange] = []

    async def start(self, sink: MembershipSink) -> None:
        self._sink = sink
        pending, self._pending = self._pending, []
        for change in pending:
            await sink(change)

    async def stop(self) -> None:
        self._sink = None

    async def push(self, change: MembershipChange) -> None:
        if self._sink is None:
            self._pending.append(change)
            return
        await self._sink(change)


class PollingMembershipFeed:
    """
    Fallback feed for hosts without change events.

    Each poll asks the host for the group of every watched principal and
    emits a change wherever the answer differs from the previous poll.
    """

    def __init__(
        self,
        lookup: Callable[[uuid.UUID], Optional[str]],
        principals: Callable[[], Iterable[uuid.UUID]],
        interval_seconds: float = 1.0,
    ):
        self.lookup = lookup
        self.principals = principals
        self.interval_seconds = interval_seconds
        self._known: Dict[uuid.UUID, Optional[str]] = {}
        self._sink: Optional[MembershipSink] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self, sink: MembershipSink) -> None:
        self._sink = sink
        if self.interval_seconds > 0 and self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._sink = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Membership poll failed")

    async def poll_once(self) -> List[MembershipChange]:
        """Diff the host against the last poll and deliver the changes."""
        changes: List[MembershipChange] = []
        watched = list(self.principals())
        for principal_id in watched:
            current = self.lookup(principal_id)
            previous = self._known.get(principal_id)
            if principal_id in self._known and current == previous:
                continue
            self._known[principal_id] = current
            if current is None and previous is None:
                continue
            changes.append(MembershipChange(principal_id, current, previous))

        for principal_id in [p for p in self._known if p not in set(watched)]:
            del self._known[principal_id]

        if self._sink is not None:
            for change in changes:
                await self._sink(change)
        return changes


class InMemoryGroupHost:
    """Group host held in process memory; announces changes through a push feed."""

    def __init__(self):
        self._groups: Dict[uuid.UUID, str] = {}
        self._feed = PushMembershipFeed()

    def get_group(self, principal_id: uuid.UUID) -> Optional[str]:
        return self._groups.get(principal_id)

    def membership_change_feed(self) -> PushMembershipFeed:
        return self._feed

    async def join(self, principal_id: uuid.UUID, group_id: str) -> None:
        previous = self._groups.get(principal_id)
        if previous == group_id:
            return
        self._groups[principal_id] = group_id
        await self._feed.push(MembershipChange(principal_id, group_id, previous))

    async def leave(self, principal_id: uuid.UUID) -> None:
        previous = self._groups.pop(principal_id, None)
        if previous is not None:
            await self._feed.push(MembershipChange(principal_id, None, previous))
