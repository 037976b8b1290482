"""API v1 router."""

from fastapi import APIRouter

from berth.api.v1.activities import router as activities_router
from berth.api.v1.admin import router as admin_router
from berth.api.v1.containers import router as containers_router
from berth.api.v1.ports import router as ports_router
from berth.api.v1.volumes import router as volumes_router

router = APIRouter()

router.include_router(containers_router, prefix="/containers", tags=["containers"])
router.include_router(volumes_router, prefix="/volumes", tags=["volumes"])
router.include_router(ports_router, prefix="/ports", tags=["ports"])
router.include_router(activities_router, prefix="/activities", tags=["activities"])
router.include_router(admin_router)  # /admin prefix is in the router itself
