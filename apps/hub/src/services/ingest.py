from __future__ import annotations

import logging
import math
from typing import Any, Optional

from config import settings

from .errors import IrrigationError
from .event_bus import EventBus, event_bus
from .models import Zone
from .storage import IrrigationStore, irrigation_store
from .zones import ZoneActuator, ZoneStateResult, zone_actuator

logger = logging.getLogger("irrigation.hub.ingest")


def coerce_moisture(raw: Any) -> Optional[int]:
    """Parse a raw sensor value into a 0-100 integer percentage, or None when unusable."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or value < 0 or value > 100:
        return None
    return int(round(value))


async def ingest_moisture(
    sensor_id: str,
    raw: Any,
    *,
    store: IrrigationStore = irrigation_store,
    bus: EventBus = event_bus,
) -> list[Zone]:
    """Store a moisture reading on every zone bound to ``sensor_id``."""
    moisture = coerce_moisture(raw)
    if moisture is None:
        logger.debug("Dropping invalid moisture value %r from %s", raw, sensor_id)
        return []
    zones = await store.update_moisture_by_input(sensor_id, moisture)
    for zone in zones:
        logger.info("Zone %s moisture %s%% (%s)", zone.name, moisture, sensor_id)
        await bus.publish_moisture_update(zone.id, sensor_id, moisture)
    return zones


async def handle_zone_command(
    zone_id: int,
    command: str,
    *,
    actuator: ZoneActuator = zone_actuator,
) -> Optional[ZoneStateResult]:
    normalized = (command or "").strip().lower()
    try:
        if normalized == "start":
            result, _ = await actuator.start_zone(zone_id, settings.remote_start_minutes)
            return result
        if normalized == "stop":
            return await actuator.stop_zone(zone_id)
    except IrrigationError as exc:
        logger.warning("Remote %s for zone %s rejected: %s", normalized, zone_id, exc)
        return None
    logger.debug("Ignoring unknown command %r for zone %s", command, zone_id)
    return None


__all__ = ["coerce_moisture", "handle_zone_command", "ingest_moisture"]
