"""
Pydantic schemas for the HTTP API.
"""

from stagegate.schemas.common import ErrorResponse, HealthResponse
from stagegate.schemas.stages import (
    AccessResponse,
    AuditEntryResponse,
    BypassRequest,
    BypassResponse,
    CacheStatsResponse,
    CatalogEntry,
    CatalogRequest,
    CatalogResponse,
    GrantRequest,
    GrantResponse,
    InteractionAccessResponse,
    LockTableResponse,
    PrincipalStagesResponse,
    ReloadResponse,
    RevokeRequest,
    RevokeResponse,
    StageListResponse,
    StageResponse,
    TriggerEventRequest,
    TriggerEventResponse,
    ValidationIssue,
    ValidationResponse,
)

__all__ = [
    "AccessResponse",
    "AuditEntryResponse",
    "BypassRequest",
    "BypassResponse",
    "CacheStatsResponse",
    "CatalogEntry",
    "CatalogRequest",
    "CatalogResponse",
    "ErrorResponse",
    "GrantRequest",
    "GrantResponse",
    "HealthResponse",
    "InteractionAccessResponse",
    "LockTableResponse",
    "PrincipalStagesResponse",
    "ReloadResponse",
    "RevokeRequest",
    "RevokeResponse",
    "StageListResponse",
    "StageResponse",
    "TriggerEventRequest",
    "TriggerEventResponse",
    "ValidationIssue",
    "ValidationResponse",
]
