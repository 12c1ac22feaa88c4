# pyright: reportMissingImports=false
from __future__ import annotations

from fastapi import APIRouter

from portraitist.api.v1.auth import router as auth_router
from portraitist.api.v1.health import router as health_router
from portraitist.api.v1.images import router as images_router


api_router = APIRouter()
api_router.include_router(auth_router)
api_router.include_router(health_router)
api_router.include_router(images_router)
