"""
API Routes
"""
from fastapi import APIRouter

from jtd_pipeline.api.routes.jtd import router as jtd_router
from jtd_pipeline.api.routes.admin_jtd import router as admin_jtd_router

router = APIRouter()

router.include_router(jtd_router, prefix="/jtd", tags=["JTD"])
router.include_router(admin_jtd_router, prefix="/admin/jtd", tags=["Admin JTD"])
