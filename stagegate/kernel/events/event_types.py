"""
Event type definitions using Pydantic for validation.

These are the payloads published on the EventBus by PrincipalStore and
recorded to the audit trail.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from stagegate.kernel.stages.stage_id import StageId


class StageCause(str, Enum):
    """Why a stage changed. Used for audit and to stop trigger loops."""
    COMMAND = "command"
    API = "api"
    AUTOMATED_EVENT = "automated_event"
    QUEST_REWARD = "quest_reward"
    INVENTORY_CHECK = "inventory_check"
    REGION_ENTRY = "region_entry"
    ENTITY_DEFEAT = "entity_defeat"
    ACHIEVEMENT = "achievement"
    GROUP_SYNC = "group_sync"
    STARTING_STAGE = "starting_stage"
    AUTO = "auto"
    UNKNOWN = "unknown"


class BulkReason(str, Enum):
    """Why a principal's whole stage set was (re)published."""
    CONNECT = "connect"
    GROUP_JOIN = "group_join"
    GROUP_LEAVE = "group_leave"
    RELOAD = "reload"
    REPLACE = "replace"
    GROUP_SYNC = "group_sync"
    OTHER = "other"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    """Base event payload structure."""

    model_config = ConfigDict(frozen=True)

    principal_id: uuid.UUID
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StageGranted(BaseEvent):
    """A stage was newly added to a principal's set."""

    stage: StageId
    cause: StageCause = StageCause.UNKNOWN
    unlock_message: Optional[str] = None


class StageRevoked(BaseEvent):
    """A stage was removed from a principal's set."""

    stage: StageId
    cause: StageCause = StageCause.UNKNOWN


class BulkStagesChanged(BaseEvent):
    """The principal's full resulting set after a bulk operation."""

    stages: List[StageId]
    reason: BulkReason = BulkReason.OTHER
    cause: StageCause = StageCause.UNKNOWN


class BypassChanged(BaseEvent):
    """Administrative override toggled for a principal."""

    active: bool


StageEvent = (StageGranted, StageRevoked, BulkStagesChanged, BypassChanged)
