"""Router package exposing all API routers."""

from fastapi import APIRouter

from .images.router import router as images_router
from .settings.router import router as settings_router

router = APIRouter()
router.include_router(images_router)
router.include_router(settings_router)

__all__ = ["router", "images_router", "settings_router"]
