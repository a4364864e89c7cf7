from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from asyncio_mqtt import Client, Message, MqttCodeError, MqttError
from paho.mqtt.client import topic_matches_sub

from services.event_bus import ZONE_UPDATE, EventBus, event_bus
from services.ingest import coerce_moisture, handle_zone_command, ingest_moisture

LOGGER_NAME = "irrigation.hub.mqtt.bridge"
SENSOR_FILTER_FMT = "{base}/sensors/+/moisture"
SENSOR_TOPIC_FMT = "{base}/sensors/{sensor}/moisture"
COMMAND_FILTER_FMT = "{base}/zones/+/command"
STATUS_TOPIC_FMT = "{base}/zone/{zone_id}/status"


def _topic_matches(topic: Any, wildcard: str) -> bool:
    if hasattr(topic, "matches"):
        try:
            return topic.matches(wildcard)
        except ValueError:
            pass
    return topic_matches_sub(wildcard, str(topic))


def _split_topic(topic: Any, base: str) -> Optional[list[str]]:
    text = str(topic)
    prefix = base.rstrip("/") + "/"
    if not text.startswith(prefix):
        return None
    return text[len(prefix):].split("/")


def parse_sensor_topic(topic: Any, base: str) -> Optional[str]:
    """``{base}/sensors/{sensor}/moisture`` -> sensor id."""
    parts = _split_topic(topic, base)
    if parts is None or len(parts) != 3 or parts[0] != "sensors" or parts[2] != "moisture":
        return None
    return parts[1] or None


def parse_command_topic(topic: Any, base: str) -> Optional[int]:
    """``{base}/zones/{id}/command`` -> zone id."""
    parts = _split_topic(topic, base)
    if parts is None or len(parts) != 3 or parts[0] != "zones" or parts[2] != "command":
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def parse_moisture_payload(raw_payload: bytes) -> Optional[int]:
    """Accept a bare number or a JSON object carrying ``moisture`` / ``value``."""
    try:
        decoded = raw_payload.decode("utf-8").strip()
    except UnicodeDecodeError:
        return None
    value = coerce_moisture(decoded)
    if value is not None:
        return value
    try:
        data = json.loads(decoded)
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict):
        for key in ("moisture", "value"):
            if key in data:
                return coerce_moisture(data[key])
    return None


def status_topic(base: str, zone_id: int) -> str:
    return STATUS_TOPIC_FMT.format(base=base.rstrip("/"), zone_id=zone_id)


class MqttBridge:
    """Feeds sensor readings and remote commands into the hub and mirrors zone state back out."""

    def __init__(
        self,
        client: Client,
        *,
        base_topic: str,
        bus: EventBus = event_bus,
        logger: Optional[logging.Logger] = None,
        on_disconnect: Optional[Callable[[str, BaseException | None], Awaitable[None]]] = None,
    ) -> None:
        self._client = client
        self._base = base_topic.rstrip("/")
        self._bus = bus
        self._logger = logger or logging.getLogger(LOGGER_NAME)
        self._tasks: list[asyncio.Task[None]] = []
        self._started = False
        self._on_disconnect = on_disconnect
        self._backoff_seconds = 1.0

    @property
    def sensor_filter(self) -> str:
        return SENSOR_FILTER_FMT.format(base=self._base)

    @property
    def command_filter(self) -> str:
        return COMMAND_FILTER_FMT.format(base=self._base)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._logger.info("Starting MQTT bridge on %s/#", self._base)
        self._tasks.append(
            asyncio.create_task(
                self._consume(self.sensor_filter, self._handle_sensor_message, "sensor capture"),
                name="mqtt-sensor-capture",
            )
        )
        self._tasks.append(
            asyncio.create_task(
                self._consume(self.command_filter, self._handle_command_message, "command capture"),
                name="mqtt-command-capture",
            )
        )
        self._tasks.append(asyncio.create_task(self._mirror_zone_status(), name="mqtt-zone-status"))

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # pragma: no cover
                self._logger.warning("MQTT bridge task terminated with error: %s", exc)
        self._logger.info("MQTT bridge stopped")

    async def publish_zone_status(self, zone_id: int, is_active: bool) -> None:
        await self._client.publish(status_topic(self._base, zone_id), "on" if is_active else "off", retain=True)

    async def _consume(
        self,
        topic_filter: str,
        handler: Callable[[Message], Awaitable[None]],
        context: str,
    ) -> None:
        while self._started:
            try:
                async with self._client.messages() as messages:
                    await self._client.subscribe(topic_filter)
                    async for message in messages:
                        if not _topic_matches(message.topic, topic_filter):
                            continue
                        await handler(message)
                        self._reset_backoff()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover
                await self._handle_loop_exception(context, exc)
            finally:
                try:
                    await self._client.unsubscribe(topic_filter)
                except Exception as exc:  # pragma: no cover - best effort clean-up
                    await self._handle_unsubscribe_error(context, exc)

        self._logger.debug("MQTT %s exiting", context)

    async def _mirror_zone_status(self) -> None:
        async with await self._bus.subscribe() as subscription:
            while self._started:
                event = await subscription.get()
                if event.type != ZONE_UPDATE:
                    continue
                try:
                    await self.publish_zone_status(int(event.data["zoneId"]), bool(event.data["isActive"]))
                except asyncio.CancelledError:
                    raise
                except MqttError as exc:
                    await self._handle_loop_exception("status publish", exc)

    async def _handle_sensor_message(self, message: Message) -> None:
        sensor_id = parse_sensor_topic(message.topic, self._base)
        if sensor_id is None:
            self._logger.debug("Ignoring sensor message with unexpected topic: %s", message.topic)
            return
        moisture = parse_moisture_payload(message.payload)
        if moisture is None:
            self._logger.debug("Ignoring unusable moisture payload on %s", message.topic)
            return
        await ingest_moisture(sensor_id, moisture)

    async def _handle_command_message(self, message: Message) -> None:
        zone_id = parse_command_topic(message.topic, self._base)
        if zone_id is None:
            self._logger.debug("Ignoring command with unexpected topic: %s", message.topic)
            return
        try:
            command = message.payload.decode("utf-8")
        except UnicodeDecodeError:
            return
        self._logger.info("Remote command %r for zone %s", command.strip(), zone_id)
        await handle_zone_command(zone_id, command)

    async def _handle_loop_exception(self, context: str, exc: Exception) -> None:
        if self._is_not_connected_error(exc):
            await self._notify_disconnect(context, exc)
            return
        self._logger.warning("MQTT %s loop interrupted: %s", context, exc)
        await asyncio.sleep(1.0)

    async def _handle_unsubscribe_error(self, context: str, exc: Exception) -> None:
        if self._is_not_connected_error(exc):
            await self._notify_disconnect(f"{context} unsubscribe", exc)
            return
        self._logger.debug("Failed to unsubscribe in %s: %s", context, exc)

    async def _notify_disconnect(self, context: str, exc: BaseException | None) -> None:
        if not self._started:
            return
        self._logger.warning("MQTT %s detected disconnect: %s", context, exc)
        if self._on_disconnect is not None:
            try:
                await self._on_disconnect(context, exc)
            except Exception as callback_exc:  # pragma: no cover
                self._logger.debug("Disconnect callback failed: %s", callback_exc)
        if not self._started:
            return
        await asyncio.sleep(self._backoff_seconds)
        self._backoff_seconds = min(self._backoff_seconds * 2.0, 30.0)

    def _reset_backoff(self) -> None:
        self._backoff_seconds = 1.0

    @staticmethod
    def _is_not_connected_error(exc: Exception) -> bool:
        if isinstance(exc, MqttCodeError):
            rc = exc.rc
            if isinstance(rc, int) and rc in {4, 7}:
                return True
        if isinstance(exc, MqttError):
            return "Disconnected" in str(exc)
        return False


__all__ = [
    "MqttBridge",
    "SENSOR_TOPIC_FMT",
    "parse_command_topic",
    "parse_moisture_payload",
    "parse_sensor_topic",
    "status_topic",
]
