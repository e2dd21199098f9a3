"""
Stage definition endpoints - listing, validation and reload.
"""

from fastapi import APIRouter

from stagegate.api.deps import Context, CurrentBearer, RequireAdmin
from stagegate.kernel.stages.stage_id import StageId
from stagegate.schemas.stages import (
    ReloadResponse,
    StageListResponse,
    StageResponse,
    ValidationIssue,
    ValidationResponse,
)

router = APIRouter()


@router.get("", response_model=StageListResponse)
async def list_stages(context: Context, _: CurrentBearer):
    """All loaded stage definitions."""
    invalid = context.graph.invalid_stages()
    stages = [
        StageResponse.from_definition(d, valid=d.id not in invalid)
        for d in sorted(context.graph.definitions(), key=lambda d: d.id)
    ]
    return StageListResponse(stages=stages, total=len(stages), epoch=context.registry.epoch)


@router.get("/validation", response_model=ValidationResponse)
async def validate_stages(context: Context, _: RequireAdmin):
    """Structural graph errors plus anything skipped at load time."""
    issues = [
        ValidationIssue(
            stage=str(error.stage_id),
            kind=error.kind,
            detail=str(error),
            path=[str(s) for s in error.path],
        )
        for error in context.graph.validate()
    ]
    return ValidationResponse(
        valid=not issues,
        issues=issues,
        invalid_stages=sorted(str(s) for s in context.graph.invalid_stages()),
        load_errors=[str(e) for e in context.load_errors],
    )


@router.post("/reload", response_model=ReloadResponse)
async def reload_stages(context: Context, _: RequireAdmin):
    """Re-read definitions from disk and republish to observers."""
    errors = await context.reload()
    return ReloadResponse(
        stages=len(context.graph),
        epoch=context.registry.epoch,
        errors=[str(e) for e in errors],
    )


@router.get("/{stage_id}", response_model=StageResponse)
async def get_stage(stage_id: str, context: Context, _: CurrentBearer):
    parsed = StageId.parse(stage_id)
    definition = context.graph.require(parsed)
    return StageResponse.from_definition(definition, valid=parsed not in context.graph.invalid_stages())
