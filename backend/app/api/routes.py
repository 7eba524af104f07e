"""Service-level health checks."""

from fastapi import APIRouter, Depends

from app.api import deps
from app.core.config import AppSettings

health_router = APIRouter()


@health_router.get("/", summary="Readiness check", tags=["health"])
async def healthcheck(settings: AppSettings = Depends(deps.get_app_settings)) -> dict[str, str]:
    """Report readiness and the configured storage backend."""

    return {"status": "ok", "storage_backend": settings.storage_backend}
