"""
API v1 routes.
"""

from fastapi import APIRouter

from stagegate.api.v1 import locks, principals, replication, stages

router = APIRouter()

router.include_router(stages.router, prefix="/stages", tags=["Stages"])
router.include_router(principals.router, prefix="/principals", tags=["Principals"])
router.include_router(locks.router, tags=["Locks"])
router.include_router(replication.router, tags=["Replication"])
