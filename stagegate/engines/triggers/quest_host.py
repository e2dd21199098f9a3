"""
Quest host integration point.

A quest host re-evaluates its own quest conditions for a principal when
asked. The engine calls it after stage changes; calls may be redundant,
so implementations must be idempotent.
"""

import uuid
from typing import Protocol, runtime_checkable


@runtime_checkable
class QuestHost(Protocol):
    async def request_recheck(self, principal_id: uuid.UUID) -> None:
        ...
