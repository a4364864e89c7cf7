from fastapi import APIRouter

from config import settings
from .events_router import router as events_router
from .schedules_router import router as schedules_router
from .sequences_router import router as sequences_router
from .system_router import router as system_router
from .weather_router import router as weather_router
from .zones_router import router as zones_router

router = APIRouter(prefix="/api/v1", tags=["v1"])
router.include_router(zones_router)
router.include_router(sequences_router)
router.include_router(schedules_router)
router.include_router(weather_router)
router.include_router(system_router)
router.include_router(events_router)


@router.get("/health")
async def health():
    return {"status": "ok", "version": settings.app_version}


@router.get("/info")
async def info():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "cors_origins": settings.cors_origins,
        "weather_enabled": settings.weather_enabled,
        "weather_provider": settings.weather_provider,
        "mqtt_enabled": settings.mqtt_enabled,
        "mqtt_host": settings.mqtt_host,
        "mqtt_port": settings.mqtt_port,
        "scheduler_enabled": settings.scheduler_enabled,
    }
