from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, status
from pydantic import BaseModel, ConfigDict, Field

from services.decision import evaluate_zone
from services.errors import IrrigationError, ZoneNotFoundError
from services.sequences import sequence_runner
from services.storage import irrigation_store
from services.zones import zone_actuator

from .dependencies import to_http_error

logger = logging.getLogger("irrigation.hub.api.zones")
router = APIRouter(prefix="/zones", tags=["zones"])


class ZoneCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    output_channel: str = Field(..., alias="outputChannel", min_length=1)
    input_channel: str = Field(default="", alias="inputChannel")
    position: str = ""
    moisture_threshold: int | None = Field(default=None, alias="moistureThreshold", ge=0, le=100)
    moisture_optimal: int | None = Field(default=None, alias="moistureOptimal", ge=0, le=100)
    auto_water_enabled: bool | None = Field(default=None, alias="autoWaterEnabled")
    default_duration: int | None = Field(default=None, alias="defaultDuration", gt=0)
    enabled: bool | None = None
    priority: int | None = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ZoneUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    output_channel: str | None = Field(default=None, alias="outputChannel", min_length=1)
    input_channel: str | None = Field(default=None, alias="inputChannel")
    position: str | None = None
    moisture_threshold: int | None = Field(default=None, alias="moistureThreshold", ge=0, le=100)
    moisture_optimal: int | None = Field(default=None, alias="moistureOptimal", ge=0, le=100)
    auto_water_enabled: bool | None = Field(default=None, alias="autoWaterEnabled")
    default_duration: int | None = Field(default=None, alias="defaultDuration", gt=0)
    enabled: bool | None = None
    priority: int | None = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ZoneStartRequest(BaseModel):
    duration: int | None = Field(default=None, gt=0, description="Run time in minutes; zone default when omitted")


@router.get("")
async def list_zones() -> list[dict[str, Any]]:
    zones = await irrigation_store.list_zones()
    return [zone.to_payload() for zone in zones]


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_zone(payload: ZoneCreateRequest) -> dict[str, Any]:
    fields = payload.model_dump(exclude_none=True)
    try:
        zone = await irrigation_store.add_zone(**fields)
    except IrrigationError as exc:
        raise to_http_error(exc) from exc
    logger.info("Zone %s added (#%s)", zone.name, zone.id)
    return zone.to_payload()


@router.post("/stop-all")
async def stop_all_zones() -> dict[str, Any]:
    cancelled = sequence_runner.cancel_all()
    stopped = await zone_actuator.stop_all()
    return {"success": True, "stopped": stopped, "sequencesCancelled": cancelled}


@router.get("/{zone_id}")
async def get_zone(zone_id: int) -> dict[str, Any]:
    zone = await irrigation_store.get_zone(zone_id)
    if zone is None:
        raise to_http_error(ZoneNotFoundError(zone_id))
    return zone.to_payload()


@router.patch("/{zone_id}")
async def update_zone(zone_id: int, payload: ZoneUpdateRequest) -> dict[str, Any]:
    try:
        zone = await irrigation_store.update_zone(zone_id, **payload.model_dump(exclude_none=True))
    except IrrigationError as exc:
        raise to_http_error(exc) from exc
    return zone.to_payload()


@router.delete("/{zone_id}")
async def delete_zone(zone_id: int) -> dict[str, Any]:
    try:
        zone = await irrigation_store.get_zone(zone_id)
        if zone is not None and zone.is_active:
            await zone_actuator.stop_zone(zone_id)
        await irrigation_store.delete_zone(zone_id)
    except IrrigationError as exc:
        raise to_http_error(exc) from exc
    logger.info("Zone #%s deleted", zone_id)
    return {"success": True}


@router.post("/{zone_id}/start")
async def start_zone(zone_id: int, payload: ZoneStartRequest | None = Body(default=None)) -> dict[str, Any]:
    duration = payload.duration if payload is not None else None
    try:
        result, handle = await zone_actuator.start_zone(zone_id, duration)
    except (IrrigationError, ValueError) as exc:
        raise to_http_error(exc) from exc
    body = result.to_payload()
    body["duration"] = handle.minutes
    return body


@router.post("/{zone_id}/stop")
async def stop_zone(zone_id: int) -> dict[str, Any]:
    try:
        result = await zone_actuator.stop_zone(zone_id)
    except IrrigationError as exc:
        raise to_http_error(exc) from exc
    return result.to_payload()


@router.get("/{zone_id}/decision")
async def zone_decision(zone_id: int) -> dict[str, Any]:
    zone = await irrigation_store.get_zone(zone_id)
    if zone is None:
        raise to_http_error(ZoneNotFoundError(zone_id))
    decision = await evaluate_zone(zone)
    return {"zoneId": zone.id, **decision.to_payload()}


__all__ = ["router"]
