"""
Principal endpoints - held stages, grant/revoke, bypass flag, access queries,
trigger event intake and audit history.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from stagegate.api.deps import Context, CurrentBearer, DbSession, RequireAdmin, ensure_self_or_admin
from stagegate.kernel.errors import MissingDependenciesError
from stagegate.kernel.events.event_store import EventStore
from stagegate.kernel.stages.definitions import ResourceKind
from stagegate.kernel.stages.graph import GrantPolicy
from stagegate.kernel.stages.stage_id import StageId, try_normalize_resource_id
from stagegate.logging_config import get_logger
from stagegate.schemas.stages import (
    AccessResponse,
    AuditEntryResponse,
    BypassRequest,
    BypassResponse,
    GrantRequest,
    GrantResponse,
    InteractionAccessResponse,
    PrincipalStagesResponse,
    RevokeRequest,
    RevokeResponse,
    TriggerEventRequest,
    TriggerEventResponse,
)

router = APIRouter()
logger = get_logger(__name__)


def _names(stages) -> List[str]:
    return sorted(str(s) for s in stages)


@router.get("/{principal_id}/stages", response_model=PrincipalStagesResponse)
async def get_principal_stages(principal_id: uuid.UUID, context: Context, bearer: CurrentBearer):
    ensure_self_or_admin(bearer, principal_id)
    if context.store.is_loaded(principal_id):
        stages = context.store.stages(principal_id)
    else:
        # Offline principals are read from durable state without loading them
        stages = await context.durable.load_principal_state(principal_id)
    return PrincipalStagesResponse(
        principal_id=principal_id,
        stages=_names(stages),
        bypass=context.store.is_bypassing(principal_id),
    )


@router.post("/{principal_id}/grant", response_model=GrantResponse)
async def grant_stage(principal_id: uuid.UUID, body: GrantRequest, context: Context, _: RequireAdmin):
    """
    Grant a stage.

    Under the strict policy a grant with bypass_dependencies=true first
    answers 409 with a confirmation window; repeating the same request
    within the window grants without the missing dependencies.
    """
    stage = StageId.parse(body.stage)
    try:
        added = await context.store.grant(principal_id, stage, body.cause)
    except MissingDependenciesError as exc:
        if not body.bypass_dependencies or context.store.grant_policy is not GrantPolicy.STRICT:
            raise
        context.bypass_tokens.issue(principal_id, stage)
        logger.info(
            "Dependency bypass awaiting confirmation",
            extra={"principal_id": str(principal_id), "stage": str(stage)},
        )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "Missing dependencies; repeat the request to confirm the bypass",
                "stage": str(stage),
                "missing": [str(m) for m in exc.missing],
                "confirm_within_seconds": context.bypass_tokens.window_seconds,
            },
        ) from exc

    return GrantResponse(
        principal_id=principal_id,
        stage=str(stage),
        added=[str(s) for s in added],
        stages=_names(context.store.stages(principal_id)),
    )


@router.post("/{principal_id}/revoke", response_model=RevokeResponse)
async def revoke_stage(principal_id: uuid.UUID, body: RevokeRequest, context: Context, _: RequireAdmin):
    stage = StageId.parse(body.stage)
    removed = await context.store.revoke(principal_id, stage, body.cause)
    return RevokeResponse(
        principal_id=principal_id,
        stage=str(stage),
        removed=[str(s) for s in removed],
        stages=_names(context.store.stages(principal_id)),
    )


@router.put("/{principal_id}/bypass", response_model=BypassResponse)
async def set_bypass(principal_id: uuid.UUID, body: BypassRequest, context: Context, _: RequireAdmin):
    changed = await context.store.set_bypass(principal_id, body.active)
    return BypassResponse(principal_id=principal_id, active=body.active, changed=changed)


@router.get("/{principal_id}/access/{kind}/{resource_id:path}", response_model=AccessResponse)
async def check_access(
    principal_id: uuid.UUID,
    kind: ResourceKind,
    resource_id: str,
    context: Context,
    bearer: CurrentBearer,
):
    """Which stage a resource needs and whether the principal lacks it. Never fails on unknown ids."""
    ensure_self_or_admin(bearer, principal_id)
    required = context.store.required_stage(kind, resource_id)
    return AccessResponse(
        principal_id=principal_id,
        kind=kind,
        resource_id=try_normalize_resource_id(resource_id) or resource_id,
        required_stage=str(required) if required else None,
        locked=context.store.is_locked(principal_id, kind, resource_id),
    )


@router.get("/{principal_id}/interactions", response_model=InteractionAccessResponse)
async def check_interaction(
    principal_id: uuid.UUID,
    context: Context,
    bearer: CurrentBearer,
    interaction_type: str = Query(..., alias="type"),
    held: Optional[str] = None,
    target: Optional[str] = None,
):
    ensure_self_or_admin(bearer, principal_id)
    required = context.cache.resolve_interaction(interaction_type, held, target)
    return InteractionAccessResponse(
        principal_id=principal_id,
        interaction_type=interaction_type,
        held=held,
        target=target,
        required_stage=str(required) if required else None,
        locked=context.store.is_interaction_locked(principal_id, interaction_type, held, target),
    )


@router.post("/{principal_id}/events", response_model=TriggerEventResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_trigger_event(
    principal_id: uuid.UUID,
    body: TriggerEventRequest,
    context: Context,
    _: RequireAdmin,
):
    """Queue an external event; grants happen in the next processing cycle."""
    stages = context.triggers.stages_for(body.kind, body.key)
    context.notify(principal_id, body.kind, body.key)
    return TriggerEventResponse(principal_id=principal_id, queued=True, stages=[str(s) for s in stages])


@router.get("/{principal_id}/history", response_model=List[AuditEntryResponse])
async def get_history(
    principal_id: uuid.UUID,
    db: DbSession,
    _: RequireAdmin,
    limit: int = Query(100, ge=1, le=500),
):
    """Audit trail for the principal, newest first."""
    rows = await EventStore(db).get_entity_history("principal", principal_id, limit=limit)
    return [
        AuditEntryResponse(
            event_type=str(row.event_type),
            cause=row.cause,
            payload=row.payload,
            created_at=row.created_at,
        )
        for row in rows
    ]
