from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query

from config import settings
from services.weather import weather_service

router = APIRouter(prefix="/weather", tags=["weather"])


def _unavailable() -> HTTPException:
    if not settings.weather_enabled:
        return HTTPException(status_code=503, detail="Weather integration disabled")
    return HTTPException(status_code=503, detail="Weather data unavailable")


@router.get("/current")
async def current_weather() -> dict[str, Any]:
    snapshot = await weather_service.get_weather()
    if snapshot is None:
        raise _unavailable()
    return snapshot.to_payload()


@router.post("/refresh")
async def refresh_weather() -> dict[str, Any]:
    weather_service.invalidate()
    snapshot = await weather_service.get_weather()
    if snapshot is None:
        raise _unavailable()
    return snapshot.to_payload()


@router.get("/history")
async def weather_history(limit: int = Query(default=100, ge=1, le=1000)) -> list[dict[str, Any]]:
    return await weather_service.history(limit=limit)


@router.get("/skip")
async def weather_skip() -> dict[str, Any]:
    skip = await weather_service.should_skip_for_weather()
    return {"skip": skip, "rainThreshold": weather_service.rain_threshold}


__all__ = ["router"]
