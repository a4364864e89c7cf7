from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from asyncio_mqtt import Client, MqttCodeError, MqttError

from .bridge import SENSOR_TOPIC_FMT, MqttBridge

logger = logging.getLogger("irrigation.hub.mqtt")

RECONNECT_INITIAL_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 30.0

BridgeFactory = Callable[..., MqttBridge]


def _iso(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class BrokerConfig:
    host: str
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    tls: bool = False
    base_topic: str = "irrigation"

    @classmethod
    def from_settings(cls, settings: Any) -> "BrokerConfig":
        return cls(
            host=settings.mqtt_host,
            port=settings.mqtt_port,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
            client_id=settings.mqtt_client_id,
            tls=settings.mqtt_tls,
            base_topic=(settings.mqtt_base_topic or "irrigation").rstrip("/"),
        )

    @property
    def broker(self) -> str:
        return f"{self.host}:{self.port}"


class MqttManager:
    """Keeps one broker session alive for the sensor/command bridge.

    A failed initial connect is not fatal: the manager stays registered and
    retries with exponential backoff, so the hub comes up without a broker.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_factory: Callable[..., Client] = Client,
        bridge_factory: BridgeFactory = MqttBridge,
    ) -> None:
        self.config = config
        self._client_factory = client_factory
        self._bridge_factory = bridge_factory
        self._client: Optional[Client] = None
        self._bridge: Optional[MqttBridge] = None
        self._lock = asyncio.Lock()
        self._running = False
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempts = 0
        self._connected_at: Optional[datetime] = None
        self._disconnected_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

    @property
    def base_topic(self) -> str:
        return self.config.base_topic

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def start(self) -> bool:
        """Connect once; on failure keep retrying in the background. Returns True when connected now."""
        self._running = True
        try:
            async with self._lock:
                await self._open_session()
            return True
        except MqttError as exc:
            logger.error("MQTT failed to connect to %s: %s", self.config.broker, exc)
            self._record_disconnect(f"connect: {exc}")
            self._schedule_reconnect()
            return False

    async def stop(self) -> None:
        self._running = False
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        async with self._lock:
            await self._close_session(reason="shutdown")

    async def publish(self, topic: str, payload: str, *, retain: bool = False) -> None:
        if self._client is None:
            raise RuntimeError("MQTT client is not connected")
        await self._client.publish(topic, payload, retain=retain)
        logger.info("Published to %s", topic)

    async def publish_sensor_reading(self, sensor: str, value: Any) -> str:
        """Publish a moisture reading on the sensor topic the bridge listens to."""
        topic = SENSOR_TOPIC_FMT.format(base=self.base_topic, sensor=sensor)
        await self.publish(topic, str(value))
        return topic

    async def notify_disconnect(self, source: str, exc: BaseException | None = None) -> None:
        """Called by the bridge when a loop sees the broker go away."""
        if not self._running:
            return
        reason = f"{source}: {exc}" if exc else source
        logger.warning("MQTT disconnect reported by %s", reason)
        self._record_disconnect(reason)
        self._schedule_reconnect()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "reconnecting": self.reconnecting,
            "broker": self.config.broker,
            "host": self.config.host,
            "port": self.config.port,
            "clientId": self.config.client_id,
            "baseTopic": self.base_topic,
            "reconnectAttempts": self._reconnect_attempts,
            "lastConnectTime": _iso(self._connected_at),
            "lastDisconnectTime": _iso(self._disconnected_at),
            "lastError": self._last_error,
        }

    def _record_disconnect(self, reason: str) -> None:
        self._last_error = reason
        self._disconnected_at = datetime.now(timezone.utc)

    def _schedule_reconnect(self) -> None:
        if self._running and not self.reconnecting:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name="mqtt-reconnect")

    async def _reconnect_loop(self) -> None:
        delay = RECONNECT_INITIAL_SECONDS
        while self._running:
            async with self._lock:
                await self._close_session(reason=self._last_error or "reconnect")
            await asyncio.sleep(delay)
            self._reconnect_attempts += 1
            try:
                async with self._lock:
                    if not self._running:
                        return
                    await self._open_session()
            except MqttError as exc:
                logger.warning("MQTT reconnect attempt %d failed: %s", self._reconnect_attempts, exc)
                self._record_disconnect(f"reconnect: {exc}")
                delay = min(delay * 2.0, RECONNECT_MAX_SECONDS)
                continue
            logger.info("MQTT reconnected after %d attempt(s)", self._reconnect_attempts)
            return

    async def _open_session(self) -> None:
        options: dict[str, Any] = {"port": self.config.port, "client_id": self.config.client_id}
        if self.config.username:
            options["username"] = self.config.username
            options["password"] = self.config.password
        if self.config.tls:
            options["tls_context"] = ssl.create_default_context()

        client = self._client_factory(self.config.host, **options)
        await client.connect()
        self._client = client
        self._connected_at = datetime.now(timezone.utc)
        self._last_error = None
        self._reconnect_attempts = 0
        logger.info("MQTT connected to %s (base topic %s)", self.config.broker, self.base_topic)
        self._bridge = self._bridge_factory(client, base_topic=self.base_topic, on_disconnect=self.notify_disconnect)
        await self._bridge.start()

    async def _close_session(self, *, reason: str) -> None:
        bridge, self._bridge = self._bridge, None
        if bridge is not None:
            await bridge.stop()
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except (MqttCodeError, MqttError):
            await client.force_disconnect()
        self._disconnected_at = datetime.now(timezone.utc)
        if self._last_error is None:
            self._last_error = reason
        logger.info("MQTT session to %s closed (%s)", self.config.broker, reason)


_manager: Optional[MqttManager] = None


def get_mqtt_manager() -> Optional[MqttManager]:
    return _manager


async def startup(settings: Any) -> Optional[MqttManager]:
    global _manager
    if _manager is not None:
        return _manager
    manager = MqttManager(BrokerConfig.from_settings(settings))
    _manager = manager
    await manager.start()
    return manager


async def shutdown() -> None:
    global _manager
    manager, _manager = _manager, None
    if manager is not None:
        await manager.stop()


async def restart(settings: Any) -> Optional[MqttManager]:
    """Drop the current session and reconnect with the current settings when MQTT is enabled."""
    await shutdown()
    if not settings.mqtt_enabled:
        logger.info("MQTT disabled")
        return None
    return await startup(settings)


__all__ = ["BrokerConfig", "MqttManager", "get_mqtt_manager", "restart", "shutdown", "startup"]
