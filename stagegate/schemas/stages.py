"""
Request/response schemas for stages, principals and access queries.

Stage ids cross the API as plain "namespace:path" strings.
"""

import uuid
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from stagegate.engines.triggers.trigger_engine import TriggerKind
from stagegate.kernel.events.event_types import StageCause
from stagegate.kernel.stages.definitions import ResourceKind, StageDefinition


class StageResponse(BaseModel):
    """Stage definition as shown to clients."""

    id: str
    display_name: str
    description: str = ""
    icon: Optional[str] = None
    unlock_message: Optional[str] = None
    dependencies: List[str] = []
    valid: bool = True

    @classmethod
    def from_definition(cls, definition: StageDefinition, valid: bool = True) -> "StageResponse":
        return cls(
            id=str(definition.id),
            display_name=definition.title,
            description=definition.description,
            icon=definition.icon,
            unlock_message=definition.unlock_message,
            dependencies=[str(d) for d in definition.dependencies],
            valid=valid,
        )


class StageListResponse(BaseModel):
    stages: List[StageResponse]
    total: int
    epoch: int


class ValidationIssue(BaseModel):
    stage: str
    kind: str
    detail: str
    path: List[str] = []


class ValidationResponse(BaseModel):
    valid: bool
    issues: List[ValidationIssue] = []
    invalid_stages: List[str] = []
    load_errors: List[str] = []


class PrincipalStagesResponse(BaseModel):
    principal_id: uuid.UUID
    stages: List[str]
    bypass: bool = False


class GrantRequest(BaseModel):
    stage: str = Field(..., min_length=1, max_length=255)
    cause: StageCause = StageCause.API
    bypass_dependencies: bool = False


class GrantResponse(BaseModel):
    principal_id: uuid.UUID
    stage: str
    added: List[str]
    stages: List[str]


class RevokeRequest(BaseModel):
    stage: str = Field(..., min_length=1, max_length=255)
    cause: StageCause = StageCause.API


class RevokeResponse(BaseModel):
    principal_id: uuid.UUID
    stage: str
    removed: List[str]
    stages: List[str]


class BypassRequest(BaseModel):
    active: bool


class BypassResponse(BaseModel):
    principal_id: uuid.UUID
    active: bool
    changed: bool


class AccessResponse(BaseModel):
    principal_id: uuid.UUID
    kind: ResourceKind
    resource_id: str
    required_stage: Optional[str] = None
    locked: bool


class InteractionAccessResponse(BaseModel):
    principal_id: uuid.UUID
    interaction_type: str
    held: Optional[str] = None
    target: Optional[str] = None
    required_stage: Optional[str] = None
    locked: bool


class LockTableResponse(BaseModel):
    kind: ResourceKind
    epoch: int
    entries: Dict[str, str]


class CatalogEntry(BaseModel):
    id: str
    tags: List[str] = []


class CatalogRequest(BaseModel):
    kind: ResourceKind
    resources: List[CatalogEntry]


class CatalogResponse(BaseModel):
    kind: ResourceKind
    added: int
    epoch: int


class CacheStatsResponse(BaseModel):
    epoch: int
    size: int
    hits: int
    misses: int
    evictions: int
    generations: int


class TriggerEventRequest(BaseModel):
    kind: TriggerKind
    key: str = Field(..., min_length=1, max_length=255)


class TriggerEventResponse(BaseModel):
    principal_id: uuid.UUID
    queued: bool
    stages: List[str]


class AuditEntryResponse(BaseModel):
    event_type: str
    cause: Optional[str] = None
    payload: Dict
    created_at: datetime


class ReloadResponse(BaseModel):
    stages: int
    epoch: int
    errors: List[str] = []
