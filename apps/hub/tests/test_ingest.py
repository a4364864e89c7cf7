import asyncio
from typing import Callable

import pytest

from services.event_bus import MOISTURE_UPDATE, EventBus
from services.ingest import coerce_moisture, handle_zone_command, ingest_moisture
from services.storage import IrrigationStore
from services.zones import ZoneActuator


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("42.6", 43),
        (100, 100),
        (0, 0),
        (b"55", 55),
        (" 12 ", 12),
        (-1, None),
        (101, None),
        ("abc", None),
        ("", None),
        ("nan", None),
        (True, None),
        (None, None),
    ],
)
def test_coerce_moisture(raw, expected):
    assert coerce_moisture(raw) == expected


@pytest.mark.anyio
async def test_reading_updates_every_bound_zone(store: IrrigationStore, bus: EventBus) -> None:
    first = await store.add_zone(name="Front", output_channel="IrrigationValve1", input_channel="IrrigationMoisture1")
    second = await store.add_zone(name="Side", output_channel="IrrigationValve2", input_channel="IrrigationMoisture1")
    other = await store.add_zone(name="Back", output_channel="IrrigationValve3", input_channel="IrrigationMoisture3")

    async with await bus.subscribe() as subscription:
        zones = await ingest_moisture("IrrigationMoisture1", "37.2", store=store, bus=bus)
        events = [await asyncio.wait_for(subscription.get(), timeout=1.0) for _ in zones]

    assert [zone.id for zone in zones] == [first.id, second.id]
    assert all(zone.moisture == 37 for zone in zones)
    assert [event.type for event in events] == [MOISTURE_UPDATE, MOISTURE_UPDATE]
    assert events[0].data["sensor"] == "IrrigationMoisture1"
    assert events[0].data["moisture"] == 37
    untouched = await store.get_zone(other.id)
    assert untouched is not None and untouched.moisture is None


@pytest.mark.anyio
async def test_invalid_reading_is_dropped(store: IrrigationStore, bus: EventBus) -> None:
    zone = await store.add_zone(name="Front", output_channel="IrrigationValve1", input_channel="IrrigationMoisture1")

    assert await ingest_moisture("IrrigationMoisture1", "150", store=store, bus=bus) == []
    assert await ingest_moisture("IrrigationMoisture1", "wet", store=store, bus=bus) == []

    stored = await store.get_zone(zone.id)
    assert stored is not None and stored.moisture is None


@pytest.mark.anyio
async def test_unbound_sensor_changes_nothing(store: IrrigationStore, bus: EventBus) -> None:
    await store.add_zone(name="Front", output_channel="IrrigationValve1", input_channel="IrrigationMoisture1")
    assert await ingest_moisture("IrrigationMoisture9", 40, store=store, bus=bus) == []


@pytest.mark.anyio
async def test_remote_commands_start_and_stop(
    store: IrrigationStore, actuator: ZoneActuator, settings_override: Callable[..., None]
) -> None:
    settings_override(remote_start_minutes=10)
    zone = await store.add_zone(name="Front", output_channel="IrrigationValve1")

    started = await handle_zone_command(zone.id, " START ", actuator=actuator)
    assert started is not None and started.is_active is True
    handle = actuator.timers.get(zone.id)
    assert handle is not None and handle.minutes == 10

    stopped = await handle_zone_command(zone.id, "stop", actuator=actuator)
    assert stopped is not None and stopped.is_active is False


@pytest.mark.anyio
async def test_unknown_or_rejected_commands_are_ignored(store: IrrigationStore, actuator: ZoneActuator) -> None:
    first = await store.add_zone(name="Front", output_channel="IrrigationValve1")
    second = await store.add_zone(name="Back", output_channel="IrrigationValve2")

    assert await handle_zone_command(first.id, "dance", actuator=actuator) is None

    await actuator.set_zone_state(first.id, True)
    assert await handle_zone_command(second.id, "start", actuator=actuator) is None
    assert await handle_zone_command(999, "stop", actuator=actuator) is None
    await actuator.stop_all()
