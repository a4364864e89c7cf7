from __future__ import annotations

import logging
from typing import Any, Literal

from asyncio_mqtt import MqttError
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import settings
from mqtt.client import get_mqtt_manager, restart as mqtt_restart
from services.errors import IrrigationError
from services.relay import RelayError, loxone_relay
from services.scheduler import irrigation_scheduler
from services.storage import irrigation_store
from services.weather import weather_service

from .dependencies import to_http_error

logger = logging.getLogger("irrigation.hub.api.system")
router = APIRouter(prefix="/system", tags=["system"])


class WinterModeRequest(BaseModel):
    enabled: bool


class DailyCheckRequest(BaseModel):
    enabled: bool
    time: str = Field(default="04:00", description="Local time as HH:MM")


class LoxoneSetup(BaseModel):
    host: str | None = None
    username: str | None = None
    password: str | None = None


class WeatherSetup(BaseModel):
    enabled: bool | None = None
    provider: Literal["open-meteo", "openweathermap"] | None = None
    api_key: str | None = Field(default=None, alias="apiKey")
    lat: float | None = Field(default=None, ge=-90.0, le=90.0)
    lon: float | None = Field(default=None, ge=-180.0, le=180.0)

    model_config = ConfigDict(populate_by_name=True)


class ZoneNameSetup(BaseModel):
    id: int
    name: str = Field(..., min_length=1, max_length=120)


class SetupRequest(BaseModel):
    loxone: LoxoneSetup | None = None
    weather: WeatherSetup | None = None
    zones: list[ZoneNameSetup] | None = None


class ConnectionTestRequest(BaseModel):
    host: str = ""
    username: str = ""
    password: str = ""


class MqttConfigRequest(BaseModel):
    enabled: bool | None = None
    host: str | None = Field(default=None, min_length=1)
    port: int | None = Field(default=None, ge=1, le=65535)
    username: str | None = None
    password: str | None = None
    tls: bool | None = None
    base_topic: str | None = Field(default=None, alias="baseTopic", min_length=1)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("base_topic")
    @classmethod
    def plain_topic(cls, v):
        if v is None:
            return v
        if any(ch in v for ch in "+#"):
            raise ValueError("base topic must not contain wildcards")
        topic = v.strip().strip("/")
        if not topic:
            raise ValueError("base topic must not be empty")
        return topic

class MqttTestRequest(BaseModel):
    sensor: str = Field(..., min_length=1, max_length=64)
    value: float = Field(..., ge=0, le=100)

    @field_validator("sensor")
    @classmethod
    def single_level(cls, v):
        if any(ch in v for ch in "/+#"):
            raise ValueError("sensor id must be a single topic level")
        return v


@router.get("/winter-mode")
async def get_winter_mode() -> dict[str, Any]:
    winter_mode = await irrigation_store.get_winter_mode()
    return winter_mode.to_payload()


@router.put("/winter-mode")
async def set_winter_mode(payload: WinterModeRequest) -> dict[str, Any]:
    winter_mode = await irrigation_store.set_winter_mode(payload.enabled)
    logger.info("Winter mode %s", "enabled" if winter_mode.enabled else "disabled")
    return winter_mode.to_payload()


@router.get("/daily-check")
async def get_daily_check() -> dict[str, Any]:
    enabled, check_time = await irrigation_store.get_daily_check()
    return {"enabled": enabled, "time": check_time}


@router.put("/daily-check")
async def set_daily_check(payload: DailyCheckRequest) -> dict[str, Any]:
    try:
        enabled, check_time = await irrigation_store.set_daily_check(enabled=payload.enabled, time=payload.time)
    except IrrigationError as exc:
        raise to_http_error(exc) from exc
    await irrigation_scheduler.reschedule_daily_check()
    return {"enabled": enabled, "time": check_time}


@router.get("/setup")
async def get_setup() -> dict[str, Any]:
    return {
        "loxone": {
            "host": settings.loxone_host,
            "username": settings.loxone_username,
            "passwordSet": bool(settings.loxone_password),
            "configured": loxone_relay.configured,
        },
        "weather": {
            "enabled": settings.weather_enabled,
            "provider": settings.weather_provider,
            "apiKeySet": bool(settings.weather_api_key),
            "lat": settings.weather_lat,
            "lon": settings.weather_lon,
            "rainThreshold": settings.rain_threshold,
        },
        "mqtt": {
            "enabled": settings.mqtt_enabled,
            "host": settings.mqtt_host,
            "port": settings.mqtt_port,
            "baseTopic": settings.mqtt_base_topic,
        },
        "timezone": settings.timezone,
    }


@router.post("/setup")
async def save_setup(payload: SetupRequest) -> dict[str, Any]:
    if payload.loxone is not None:
        settings.loxone_host = payload.loxone.host or None
        settings.loxone_username = payload.loxone.username or None
        if payload.loxone.password is not None:
            settings.loxone_password = payload.loxone.password or None
        await loxone_relay.close()
    if payload.weather is not None:
        weather = payload.weather
        if weather.enabled is not None:
            settings.weather_enabled = weather.enabled
        if weather.provider is not None:
            settings.weather_provider = weather.provider
        if weather.api_key is not None:
            settings.weather_api_key = weather.api_key or None
        if weather.lat is not None:
            settings.weather_lat = weather.lat
        if weather.lon is not None:
            settings.weather_lon = weather.lon
        weather_service.invalidate()
    renamed = 0
    for entry in payload.zones or []:
        try:
            await irrigation_store.update_zone(entry.id, name=entry.name)
            renamed += 1
        except IrrigationError as exc:
            logger.warning("Setup could not rename zone %s: %s", entry.id, exc)
    logger.info("Setup saved")
    return {"success": True, "zonesRenamed": renamed}


@router.post("/setup/test-connection")
async def test_connection(payload: ConnectionTestRequest) -> dict[str, Any]:
    if not payload.host or not payload.username or not payload.password:
        raise HTTPException(status_code=400, detail="Host, username and password are required")
    try:
        result = await loxone_relay.test_connection(payload.host, payload.username, payload.password)
    except RelayError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "status": result["status"]}


def _mqtt_config_payload() -> dict[str, Any]:
    return {
        "enabled": settings.mqtt_enabled,
        "host": settings.mqtt_host,
        "port": settings.mqtt_port,
        "username": settings.mqtt_username,
        "passwordSet": bool(settings.mqtt_password),
        "tls": settings.mqtt_tls,
        "baseTopic": settings.mqtt_base_topic,
    }


@router.get("/mqtt")
async def mqtt_status() -> dict[str, Any]:
    manager = get_mqtt_manager()
    if manager is None:
        return {
            "enabled": settings.mqtt_enabled,
            "connected": False,
            "reconnecting": False,
            "broker": f"{settings.mqtt_host}:{settings.mqtt_port}",
            "host": settings.mqtt_host,
            "port": settings.mqtt_port,
            "baseTopic": settings.mqtt_base_topic,
        }
    return {"enabled": settings.mqtt_enabled, **manager.status_snapshot()}


@router.post("/mqtt/config")
async def mqtt_config(payload: MqttConfigRequest) -> dict[str, Any]:
    """Apply broker settings in memory and reconnect (or disconnect when disabled)."""
    if payload.enabled is not None:
        settings.mqtt_enabled = payload.enabled
    if payload.host is not None:
        settings.mqtt_host = payload.host.strip()
    if payload.port is not None:
        settings.mqtt_port = payload.port
    if payload.username is not None:
        settings.mqtt_username = payload.username or None
    if payload.password is not None:
        settings.mqtt_password = payload.password or None
    if payload.tls is not None:
        settings.mqtt_tls = payload.tls
    if payload.base_topic is not None:
        settings.mqtt_base_topic = payload.base_topic
    manager = await mqtt_restart(settings)
    logger.info(
        "MQTT configuration updated (enabled=%s, broker=%s:%s)",
        settings.mqtt_enabled,
        settings.mqtt_host,
        settings.mqtt_port,
    )
    return {
        "success": True,
        "connected": manager is not None and manager.connected,
        "config": _mqtt_config_payload(),
    }


@router.post("/mqtt/test")
async def mqtt_test(payload: MqttTestRequest) -> dict[str, Any]:
    """Publish a simulated moisture reading; the bridge ingests it like a real sensor."""
    manager = get_mqtt_manager()
    if manager is None or not manager.connected:
        raise HTTPException(status_code=503, detail="MQTT not connected")
    try:
        topic = await manager.publish_sensor_reading(payload.sensor, _format_reading(payload.value))
    except (MqttError, RuntimeError) as exc:
        raise HTTPException(status_code=503, detail=f"MQTT publish failed: {exc}") from exc
    return {"success": True, "topic": topic, "value": payload.value}


def _format_reading(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


__all__ = ["router"]
