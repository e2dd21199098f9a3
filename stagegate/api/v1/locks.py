"""
Lock table, catalog and resolution cache endpoints.
"""

from fastapi import APIRouter, HTTPException, status

from stagegate.api.deps import Context, CurrentBearer, RequireAdmin
from stagegate.kernel.rules.catalog import Resource
from stagegate.kernel.stages.definitions import ResourceKind
from stagegate.kernel.stages.stage_id import InvalidStageId
from stagegate.schemas.stages import (
    CacheStatsResponse,
    CatalogRequest,
    CatalogResponse,
    LockTableResponse,
)

router = APIRouter()


@router.get("/locks/{kind}", response_model=LockTableResponse)
async def get_lock_table(kind: ResourceKind, context: Context, _: CurrentBearer):
    """Resolved resource -> stage table for every catalogued resource of a kind."""
    table = context.cache.resolve_all(kind)
    return LockTableResponse(
        kind=kind,
        epoch=context.registry.epoch,
        entries={rid: str(stage) for rid, stage in sorted(table.items())},
    )


@router.post("/catalog", response_model=CatalogResponse, status_code=status.HTTP_201_CREATED)
async def add_catalog_resources(body: CatalogRequest, context: Context, _: RequireAdmin):
    try:
        resources = [Resource.of(body.kind, entry.id, entry.tags) for entry in body.resources]
    except InvalidStageId as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    added = context.catalog.add_all(resources)
    await context.replication.broadcast_definitions()
    return CatalogResponse(kind=body.kind, added=added, epoch=context.registry.epoch)


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def get_cache_stats(context: Context, _: RequireAdmin):
    stats = context.cache.stats()
    return CacheStatsResponse(
        epoch=stats.epoch,
        size=stats.size,
        hits=stats.hits,
        misses=stats.misses,
        evictions=stats.evictions,
        generations=stats.generations,
    )
