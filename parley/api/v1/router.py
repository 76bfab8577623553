# pyright: reportMissingImports=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownVariableType=false
from __future__ import annotations

from fastapi import APIRouter

from parley.api.v1.admin_models import router as admin_models_router
from parley.api.v1.admin_providers import router as admin_providers_router
from parley.api.v1.chat import router as chat_router
from parley.api.v1.files import router as files_router
from parley.api.v1.health import router as health_router


api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(chat_router)
api_router.include_router(files_router)
api_router.include_router(admin_providers_router)
api_router.include_router(admin_models_router)
