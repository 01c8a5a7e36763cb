import time

from fastapi import APIRouter, Depends

from harvester.core.config import Settings, get_settings

router = APIRouter()

_STARTED_AT = time.monotonic()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz(settings: Settings = Depends(get_settings)) -> dict[str, object]:
    return {
        "status": "ok",
        "service": settings.otel_service_name,
        "uptime_seconds": round(time.monotonic() - _STARTED_AT, 1),
    }
