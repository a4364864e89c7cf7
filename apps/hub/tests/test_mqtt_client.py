import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from asyncio_mqtt import MqttError

from config import settings
from mqtt.bridge import MqttBridge
from mqtt.client import BrokerConfig, MqttManager, get_mqtt_manager, restart
from services.storage import irrigation_store


class FakeClient:
    def __init__(self, host, *, fail_connect=False, **options) -> None:
        self.host = host
        self.options = options
        self.fail_connect = fail_connect
        self.connected = False
        self.published: list[tuple[str, str, bool]] = []

    async def connect(self) -> None:
        if self.fail_connect:
            raise MqttError("Connection refused")
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def force_disconnect(self) -> None:
        self.connected = False

    async def publish(self, topic, payload, retain=False) -> None:
        self.published.append((topic, payload, retain))


class FakeBridge:
    def __init__(self, client, *, base_topic, on_disconnect=None) -> None:
        self.client = client
        self.base_topic = base_topic
        self.on_disconnect = on_disconnect
        self.running = False

    async def start(self) -> None:
        self.running = True

    async def stop(self) -> None:
        self.running = False


class Factories:
    def __init__(self, *, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.clients: list[FakeClient] = []
        self.bridges: list[FakeBridge] = []

    def client(self, host, **options) -> FakeClient:
        client = FakeClient(host, fail_connect=self.fail_connect, **options)
        self.clients.append(client)
        return client

    def bridge(self, client, **kwargs) -> FakeBridge:
        bridge = FakeBridge(client, **kwargs)
        self.bridges.append(bridge)
        return bridge


def _manager(factories: Factories, **config) -> MqttManager:
    config.setdefault("host", "broker.local")
    config.setdefault("base_topic", "garden")
    return MqttManager(BrokerConfig(**config), client_factory=factories.client, bridge_factory=factories.bridge)


def test_broker_config_from_settings_trims_base_topic() -> None:
    fake = SimpleNamespace(
        mqtt_host="broker.lan",
        mqtt_port=8883,
        mqtt_username="hub",
        mqtt_password="pw",
        mqtt_client_id="hub-1",
        mqtt_tls=True,
        mqtt_base_topic="garden/",
    )
    config = BrokerConfig.from_settings(fake)
    assert config.broker == "broker.lan:8883"
    assert config.base_topic == "garden"
    assert config.tls is True


@pytest.mark.anyio
async def test_start_connects_and_starts_bridge() -> None:
    factories = Factories()
    manager = _manager(factories, username="hub", password="pw")

    assert await manager.start() is True
    try:
        assert manager.connected is True
        client = factories.clients[0]
        assert client.host == "broker.local"
        assert client.options["username"] == "hub"
        bridge = factories.bridges[0]
        assert bridge.running is True
        assert bridge.base_topic == "garden"
        assert manager.status_snapshot()["lastConnectTime"] is not None
    finally:
        await manager.stop()

    assert manager.connected is False
    assert factories.bridges[0].running is False
    assert factories.clients[0].connected is False


@pytest.mark.anyio
async def test_sensor_reading_goes_to_the_sensor_topic() -> None:
    factories = Factories()
    manager = _manager(factories)
    await manager.start()
    try:
        topic = await manager.publish_sensor_reading("s1", 42)
    finally:
        await manager.stop()

    assert topic == "garden/sensors/s1/moisture"
    assert factories.clients[0].published == [("garden/sensors/s1/moisture", "42", False)]


@pytest.mark.anyio
async def test_publish_requires_connection() -> None:
    manager = _manager(Factories())
    with pytest.raises(RuntimeError):
        await manager.publish("garden/anything", "1")


@pytest.mark.anyio
async def test_failed_connect_keeps_retrying_in_background() -> None:
    factories = Factories(fail_connect=True)
    manager = _manager(factories)

    assert await manager.start() is False
    try:
        snapshot = manager.status_snapshot()
        assert snapshot["connected"] is False
        assert snapshot["reconnecting"] is True
        assert "Connection refused" in snapshot["lastError"]
        assert snapshot["lastDisconnectTime"] is not None
    finally:
        await manager.stop()

    assert manager.reconnecting is False
    assert factories.bridges == []


@pytest.mark.anyio
async def test_disconnect_notice_triggers_reconnect(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("mqtt.client.RECONNECT_INITIAL_SECONDS", 0.01)
    factories = Factories()
    manager = _manager(factories)
    await manager.start()
    try:
        await manager.notify_disconnect("sensor capture", MqttError("Disconnected during message iteration"))
        assert manager.reconnecting is True
        for _ in range(100):
            if len(factories.clients) == 2 and manager.connected:
                break
            await asyncio.sleep(0.01)
        assert len(factories.clients) == 2
        assert factories.bridges[0].running is False
        assert factories.bridges[1].running is True
        assert manager.status_snapshot()["lastError"] is None
    finally:
        await manager.stop()


@pytest.mark.anyio
async def test_restart_with_mqtt_disabled_drops_the_manager(settings_override) -> None:
    settings_override(mqtt_enabled=False)
    assert await restart(settings) is None
    assert get_mqtt_manager() is None


@pytest.mark.anyio
async def test_simulated_reading_is_ingested_like_a_sensor() -> None:
    zone = await irrigation_store.add_zone(name="Bed", output_channel="IrrigationValve1", input_channel="s1")
    factories = Factories()
    manager = _manager(factories, base_topic="irrigation")
    await manager.start()
    try:
        topic = await manager.publish_sensor_reading("s1", 37)
    finally:
        await manager.stop()
    published_topic, payload, _ = factories.clients[0].published[0]

    bridge = MqttBridge(AsyncMock(), base_topic="irrigation")
    await bridge._handle_sensor_message(SimpleNamespace(topic=published_topic, payload=payload.encode()))

    assert topic == "irrigation/sensors/s1/moisture"
    stored = await irrigation_store.get_zone(zone.id)
    assert stored is not None
    assert stored.moisture == 37
