from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger("irrigation.hub.events")

ZONE_UPDATE = "zone_update"
MOISTURE_UPDATE = "moisture_update"


@dataclass(frozen=True, slots=True)
class EventMessage:
    type: str
    data: dict[str, Any]
    id: str | None = None
    created_at: float = field(default_factory=lambda: time.time())

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.data}

    def to_sse(self) -> bytes:
        payload = json.dumps(self.to_dict(), separators=(",", ":"), default=str)
        lines: list[str] = []
        if self.id is not None:
            lines.append(f"id: {self.id}")
        lines.append(f"event: {self.type}")
        lines.append(f"data: {payload}")
        return ("\n".join(lines) + "\n\n").encode("utf-8")


class EventSubscription:
    def __init__(self, bus: EventBus, queue: asyncio.Queue[EventMessage]) -> None:
        self._bus = bus
        self._queue = queue
        self._closed = False

    async def get(self) -> EventMessage:
        return await self._queue.get()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._bus._unsubscribe(self._queue)

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class EventBus:
    """Best-effort fan-out of zone and sensor changes to passive listeners.

    Each listener owns a bounded queue. A listener whose queue is full is
    dropped instead of slowing the producer down.
    """

    def __init__(self, *, subscriber_queue_size: int = 256) -> None:
        self._subscriber_queue_size = max(8, subscriber_queue_size)
        self._subscribers: set[asyncio.Queue[EventMessage]] = set()
        self._lock = asyncio.Lock()
        self._counter = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event_type: str, data: dict[str, Any]) -> EventMessage:
        self._counter += 1
        message = EventMessage(type=event_type, data=data, id=str(self._counter))
        async with self._lock:
            stale: list[asyncio.Queue[EventMessage]] = []
            for queue in self._subscribers:
                try:
                    queue.put_nowait(message)
                except asyncio.QueueFull:
                    stale.append(queue)
            for queue in stale:
                self._subscribers.discard(queue)
        if stale:
            logger.info("Dropped %d slow event subscriber(s)", len(stale))
        return message

    async def publish_zone_update(self, zone_id: int, is_active: bool) -> EventMessage:
        return await self.publish(ZONE_UPDATE, {"zoneId": zone_id, "isActive": is_active})

    async def publish_moisture_update(
        self,
        zone_id: int,
        sensor: str,
        moisture: float,
        timestamp: datetime | None = None,
    ) -> EventMessage:
        stamp = (timestamp or datetime.now().astimezone()).isoformat(timespec="seconds")
        return await self.publish(
            MOISTURE_UPDATE,
            {"zoneId": zone_id, "sensor": sensor, "moisture": moisture, "timestamp": stamp},
        )

    async def subscribe(self) -> EventSubscription:
        queue: asyncio.Queue[EventMessage] = asyncio.Queue(self._subscriber_queue_size)
        async with self._lock:
            self._subscribers.add(queue)
        return EventSubscription(self, queue)

    async def _unsubscribe(self, queue: asyncio.Queue[EventMessage]) -> None:
        async with self._lock:
            self._subscribers.discard(queue)


event_bus = EventBus()

__all__ = ["EventBus", "EventMessage", "EventSubscription", "MOISTURE_UPDATE", "ZONE_UPDATE", "event_bus"]
