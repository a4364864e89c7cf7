from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from services.errors import IrrigationError, SequenceNotFoundError, ZoneNotFoundError
from services.models import SequenceStep
from services.sequences import sequence_runner
from services.storage import irrigation_store

from .dependencies import to_http_error

logger = logging.getLogger("irrigation.hub.api.sequences")
router = APIRouter(prefix="/sequences", tags=["sequences"])


class SequenceStepModel(BaseModel):
    zone_id: int = Field(..., alias="zoneId")
    duration: int = Field(..., gt=0, description="Run time in minutes")

    model_config = ConfigDict(populate_by_name=True)


class SequenceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    zones: list[SequenceStepModel] = Field(..., min_length=1)


@router.get("")
async def list_sequences() -> list[dict[str, Any]]:
    sequences = await irrigation_store.list_sequences()
    return [sequence.to_payload() for sequence in sequences]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_sequence(payload: SequenceCreateRequest) -> dict[str, Any]:
    steps = [SequenceStep(zone_id=step.zone_id, duration=step.duration) for step in payload.zones]
    try:
        for step in steps:
            if await irrigation_store.get_zone(step.zone_id) is None:
                raise ZoneNotFoundError(step.zone_id)
        sequence = await irrigation_store.create_sequence(payload.name, steps)
    except IrrigationError as exc:
        raise to_http_error(exc) from exc
    logger.info('Sequence "%s" created with %d step(s)', sequence.name, len(sequence.steps))
    return sequence.to_payload()


@router.delete("/{sequence_id}")
async def delete_sequence(sequence_id: int) -> dict[str, Any]:
    try:
        await irrigation_store.delete_sequence(sequence_id)
    except IrrigationError as exc:
        raise to_http_error(exc) from exc
    return {"success": True}


@router.post("/{sequence_id}/start", status_code=status.HTTP_202_ACCEPTED)
async def start_sequence(sequence_id: int) -> dict[str, Any]:
    sequence = await irrigation_store.get_sequence(sequence_id)
    if sequence is None:
        raise to_http_error(SequenceNotFoundError(sequence_id))
    sequence_runner.start(sequence.steps, name=f'sequence "{sequence.name}"')
    return {"success": True, "sequenceId": sequence.id, "name": sequence.name, "steps": len(sequence.steps)}


__all__ = ["router"]
