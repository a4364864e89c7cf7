from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from services.event_bus import EventMessage, event_bus
from services.storage import irrigation_store

logger = logging.getLogger("irrigation.hub.api.events")

router = APIRouter(prefix="/events", tags=["events"])

KEEPALIVE_SECONDS = 20.0


@router.get(
    "/stream",
    response_class=StreamingResponse,
    summary="Server-sent events stream for zone and moisture updates",
)
async def stream_events() -> StreamingResponse:
    logger.debug("Event stream requested")

    async def _event_source() -> AsyncIterator[bytes]:
        subscription = await event_bus.subscribe()
        try:
            snapshot = await _build_initial_snapshot()
            yield EventMessage(type="init", data=snapshot).to_sse()
            while True:
                try:
                    message = await asyncio.wait_for(subscription.get(), timeout=KEEPALIVE_SECONDS)
                    yield message.to_sse()
                except asyncio.TimeoutError:
                    yield b": keep-alive\n\n"
        except asyncio.CancelledError:  # pragma: no cover - server shutdown
            raise
        finally:
            await subscription.close()

    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(_event_source(), media_type="text/event-stream", headers=headers)


async def _build_initial_snapshot() -> dict[str, object]:
    zones = await irrigation_store.list_zones()
    winter_mode = await irrigation_store.get_winter_mode()
    return {
        "zones": [zone.to_payload() for zone in zones],
        "winterMode": winter_mode.to_payload(),
    }


__all__ = ["router"]
