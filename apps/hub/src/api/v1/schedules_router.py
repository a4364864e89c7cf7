from __future__ import annotations

from typing import Any

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from services.errors import IrrigationError
from services.scheduler import irrigation_scheduler
from services.storage import irrigation_store

from .dependencies import to_http_error

router = APIRouter(prefix="/schedules", tags=["schedules"])


class ScheduleCreateRequest(BaseModel):
    sequence_id: int = Field(..., alias="sequenceId")
    days: list[int] = Field(..., min_length=1, description="Weekdays, 0 = Sunday")
    time: str = Field(..., description="Local time as HH:MM")
    name: str = Field(default="", max_length=120)
    enabled: bool = True

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ScheduleUpdateRequest(BaseModel):
    sequence_id: int | None = Field(default=None, alias="sequenceId")
    days: list[int] | None = None
    time: str | None = None
    name: str | None = Field(default=None, max_length=120)
    enabled: bool | None = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


@router.get("")
async def list_schedules() -> list[dict[str, Any]]:
    registered = set(irrigation_scheduler.registered_ids())
    schedules = await irrigation_store.list_schedules()
    return [{**schedule.to_payload(), "registered": schedule.id in registered} for schedule in schedules]


@router.get("/triggers")
async def list_triggers() -> list[dict[str, object]]:
    return [trigger.to_payload() for trigger in irrigation_scheduler.triggers()]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_schedule(payload: ScheduleCreateRequest) -> dict[str, Any]:
    try:
        schedule = await irrigation_scheduler.create_schedule(**payload.model_dump())
    except IrrigationError as exc:
        raise to_http_error(exc) from exc
    return schedule.to_payload()


@router.patch("/{schedule_id}")
async def update_schedule(schedule_id: int, payload: ScheduleUpdateRequest) -> dict[str, Any]:
    try:
        schedule = await irrigation_scheduler.update_schedule(schedule_id, **payload.model_dump(exclude_none=True))
    except IrrigationError as exc:
        raise to_http_error(exc) from exc
    return schedule.to_payload()


@router.delete("/{schedule_id}")
async def delete_schedule(schedule_id: int) -> dict[str, Any]:
    try:
        await irrigation_scheduler.delete_schedule(schedule_id)
    except IrrigationError as exc:
        raise to_http_error(exc) from exc
    return {"success": True}


__all__ = ["router"]
