from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, cast

from .clock import local_now
from .errors import IrrigationError, WinterModeActiveError, ZoneConflictError, ZoneNotFoundError
from .event_bus import EventBus, event_bus
from .models import Zone
from .relay import RelayBackend, RelayError, loxone_relay
from .storage import IrrigationStore, irrigation_store
from .timers import TimerHandle, TimerRegistry, timer_registry

logger = logging.getLogger("irrigation.hub.zones")


@dataclass(frozen=True, slots=True)
class ZoneStateResult:
    zone_id: int
    zone_name: str
    is_active: bool
    relay_confirmed: bool

    def to_payload(self) -> dict[str, object]:
        return {
            "success": True,
            "zoneId": self.zone_id,
            "zone": self.zone_name,
            "state": self.is_active,
            "relayConfirmed": self.relay_confirmed,
        }


class ZoneActuator:
    """Single gate for every zone on/off transition.

    Admission checks, the relay command and the state commit run under one
    lock, so at most one zone is active at any time. The relay command is best
    effort: a failure is logged and the local state is committed anyway.
    """

    def __init__(
        self,
        *,
        store: IrrigationStore,
        relay: RelayBackend,
        bus: EventBus,
        timers: TimerRegistry,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self._store = store
        self._relay = relay
        self._bus = bus
        self._timers = timers
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def timers(self) -> TimerRegistry:
        return self._timers

    async def set_zone_state(self, zone_id: int, on: bool) -> ZoneStateResult:
        result, _ = await self._transition(zone_id, on)
        return result

    async def start_zone(self, zone_id: int, minutes: Optional[int] = None) -> tuple[ZoneStateResult, TimerHandle]:
        """Turn a zone on and arm its auto-off timer (zone default duration when omitted)."""
        duration = minutes
        if duration is None:
            zone = await self._store.get_zone(zone_id)
            if zone is None:
                raise ZoneNotFoundError(zone_id)
            duration = zone.default_duration or 10
        if duration <= 0:
            raise ValueError("duration must be greater than zero")
        result, handle = await self._transition(zone_id, True, minutes=duration)
        logger.info("Zone %s runs for %s min", result.zone_name, duration)
        return result, cast(TimerHandle, handle)

    async def stop_zone(self, zone_id: int) -> ZoneStateResult:
        return await self.set_zone_state(zone_id, False)

    async def _transition(
        self, zone_id: int, on: bool, *, minutes: Optional[int] = None
    ) -> tuple[ZoneStateResult, Optional[TimerHandle]]:
        handle: Optional[TimerHandle] = None
        async with self._lock:
            zone = await self._store.get_zone(zone_id)
            if zone is None:
                raise ZoneNotFoundError(zone_id)
            if on:
                winter_mode = await self._store.get_winter_mode()
                if winter_mode.enabled:
                    raise WinterModeActiveError()
                active = await self._store.find_active_zone(exclude_id=zone_id)
                if active is not None:
                    raise ZoneConflictError(active.id, active.name)

            relay_confirmed = await self._drive_relay(zone, on)
            last_watered = None if on else self._clock()
            await self._store.set_zone_active(zone_id, on, last_watered=last_watered)
            # Timer changes share the critical section with the state commit.
            if on and minutes is not None:
                handle = self._timers.arm(zone_id, minutes, lambda: self._auto_off(zone_id))
            elif not on:
                self._timers.cancel(zone_id)

        logger.info("Zone %s %s", zone.name, "started" if on else "stopped")
        await self._bus.publish_zone_update(zone_id, on)
        result = ZoneStateResult(zone_id=zone_id, zone_name=zone.name, is_active=on, relay_confirmed=relay_confirmed)
        return result, handle

    async def stop_all(self) -> int:
        self._timers.cancel_all()
        zones = await self._store.list_active_zones()
        stopped = 0
        for zone in zones:
            try:
                await self.set_zone_state(zone.id, False)
                stopped += 1
            except IrrigationError as exc:
                logger.warning("Failed to stop zone %s: %s", zone.id, exc)
        return stopped

    async def _auto_off(self, zone_id: int) -> None:
        try:
            await self.set_zone_state(zone_id, False)
        except IrrigationError as exc:
            logger.warning("Auto-off for zone %s failed: %s", zone_id, exc)

    async def _drive_relay(self, zone: Zone, on: bool) -> bool:
        try:
            return await self._relay.set_output(zone.output_channel, on)
        except RelayError as exc:
            logger.warning("Relay command for zone %s failed: %s", zone.name, exc)
            return False


zone_actuator = ZoneActuator(
    store=irrigation_store,
    relay=loxone_relay,
    bus=event_bus,
    timers=timer_registry,
)

__all__ = ["ZoneActuator", "ZoneStateResult", "zone_actuator"]
