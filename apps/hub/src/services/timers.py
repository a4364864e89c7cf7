from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("irrigation.hub.timers")

ExpireCallback = Callable[[], Awaitable[object]]


class TimerHandle:
    """One pending auto-off action for a zone."""

    def __init__(self, zone_id: int, minutes: float, deadline: float) -> None:
        self.zone_id = zone_id
        self.minutes = minutes
        self.deadline = deadline
        self._task: Optional[asyncio.Task[None]] = None
        self._done = asyncio.Event()
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def remaining_seconds(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    async def wait(self) -> bool:
        """Block until the timer fired (True) or was cancelled (False)."""
        await self._done.wait()
        return self._fired

    def _finish(self, fired: bool) -> None:
        if self._done.is_set():
            return
        self._fired = fired
        self._done.set()

    def _cancel(self) -> None:
        self._finish(False)
        if self._task is not None and not self._task.done():
            self._task.cancel()


class TimerRegistry:
    """Keeps at most one armed auto-off timer per zone id.

    Arming again for the same zone replaces the previous timer. Cancelling is
    idempotent. An expired timer removes itself before its callback runs, so a
    cancel issued from inside the callback is a no-op.
    """

    def __init__(self, *, seconds_per_minute: float = 60.0) -> None:
        self._seconds_per_minute = max(0.0, float(seconds_per_minute))
        self._timers: dict[int, TimerHandle] = {}

    def arm(self, zone_id: int, minutes: float, on_expire: ExpireCallback) -> TimerHandle:
        if minutes <= 0:
            raise ValueError("minutes must be greater than zero")
        self.cancel(zone_id)
        delay = float(minutes) * self._seconds_per_minute
        handle = TimerHandle(zone_id, minutes, time.monotonic() + delay)
        handle._task = asyncio.create_task(
            self._run(handle, delay, on_expire),
            name=f"zone-timer-{zone_id}",
        )
        self._timers[zone_id] = handle
        logger.debug("Armed timer for zone %s (%.1f min)", zone_id, minutes)
        return handle

    def cancel(self, zone_id: int) -> bool:
        handle = self._timers.pop(zone_id, None)
        if handle is None:
            return False
        handle._cancel()
        logger.debug("Cancelled timer for zone %s", zone_id)
        return True

    def cancel_all(self) -> int:
        handles = list(self._timers.values())
        self._timers.clear()
        for handle in handles:
            handle._cancel()
        if handles:
            logger.info("Cancelled %d zone timer(s)", len(handles))
        return len(handles)

    def is_armed(self, zone_id: int) -> bool:
        return zone_id in self._timers

    def get(self, zone_id: int) -> Optional[TimerHandle]:
        return self._timers.get(zone_id)

    def armed_zone_ids(self) -> list[int]:
        return sorted(self._timers)

    async def _run(self, handle: TimerHandle, delay: float, on_expire: ExpireCallback) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            handle._finish(False)
            raise
        if self._timers.get(handle.zone_id) is handle:
            del self._timers[handle.zone_id]
        try:
            await on_expire()
        except Exception:
            logger.exception("Auto-off for zone %s failed", handle.zone_id)
        finally:
            handle._finish(True)


timer_registry = TimerRegistry()

__all__ = ["TimerHandle", "TimerRegistry", "timer_registry"]
