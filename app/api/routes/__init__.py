"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin_debug import router as admin_debug_router

router = APIRouter()

router.include_router(admin_debug_router, prefix="/admin/debug", tags=["Admin Debug"])
