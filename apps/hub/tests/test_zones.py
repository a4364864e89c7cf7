import asyncio

import pytest

from services.errors import WinterModeActiveError, ZoneConflictError, ZoneNotFoundError
from services.event_bus import ZONE_UPDATE, EventBus
from services.storage import IrrigationStore
from services.timers import TimerRegistry
from services.zones import ZoneActuator

from conftest import RecordingRelay


async def _two_zones(store: IrrigationStore) -> tuple[int, int]:
    front = await store.add_zone(name="Front lawn", output_channel="IrrigationValve1", input_channel="IrrigationMoisture1")
    back = await store.add_zone(name="Back beds", output_channel="IrrigationValve2", input_channel="IrrigationMoisture2")
    return front.id, back.id


@pytest.mark.anyio
async def test_second_zone_is_rejected_while_one_runs(
    store: IrrigationStore, actuator: ZoneActuator, relay: RecordingRelay
) -> None:
    front, back = await _two_zones(store)

    result = await actuator.set_zone_state(front, True)
    assert result.is_active is True
    assert result.relay_confirmed is True

    with pytest.raises(ZoneConflictError) as excinfo:
        await actuator.set_zone_state(back, True)
    assert excinfo.value.active_zone_id == front
    assert "Front lawn" in str(excinfo.value)
    assert relay.calls == [("IrrigationValve1", True)]


@pytest.mark.anyio
async def test_concurrent_starts_admit_exactly_one(store: IrrigationStore, actuator: ZoneActuator) -> None:
    front, back = await _two_zones(store)

    results = await asyncio.gather(
        actuator.set_zone_state(front, True),
        actuator.set_zone_state(back, True),
        return_exceptions=True,
    )

    conflicts = [item for item in results if isinstance(item, ZoneConflictError)]
    assert len(conflicts) == 1
    active = await store.list_active_zones()
    assert len(active) == 1


@pytest.mark.anyio
async def test_restarting_the_active_zone_is_allowed(store: IrrigationStore, actuator: ZoneActuator) -> None:
    front, _ = await _two_zones(store)
    await actuator.set_zone_state(front, True)
    result = await actuator.set_zone_state(front, True)
    assert result.is_active is True


@pytest.mark.anyio
async def test_winter_mode_blocks_starts_but_not_stops(store: IrrigationStore, actuator: ZoneActuator) -> None:
    front, _ = await _two_zones(store)
    await actuator.set_zone_state(front, True)
    await store.set_winter_mode(True)

    with pytest.raises(WinterModeActiveError):
        await actuator.start_zone(front, 5)

    result = await actuator.stop_zone(front)
    assert result.is_active is False


@pytest.mark.anyio
async def test_relay_failure_still_commits_state(store: IrrigationStore, bus: EventBus, fast_timers: TimerRegistry) -> None:
    front, _ = await _two_zones(store)
    failing = RecordingRelay(fail=True)
    actuator = ZoneActuator(store=store, relay=failing, bus=bus, timers=fast_timers)

    result = await actuator.set_zone_state(front, True)

    assert result.relay_confirmed is False
    zone = await store.get_zone(front)
    assert zone is not None and zone.is_active is True
    assert failing.calls == [("IrrigationValve1", True)]


@pytest.mark.anyio
async def test_unknown_zone_raises(actuator: ZoneActuator) -> None:
    with pytest.raises(ZoneNotFoundError):
        await actuator.set_zone_state(404, True)


@pytest.mark.anyio
async def test_auto_off_stops_zone_and_publishes(
    store: IrrigationStore, actuator: ZoneActuator, bus: EventBus, relay: RecordingRelay
) -> None:
    front, _ = await _two_zones(store)

    async with await bus.subscribe() as subscription:
        _, handle = await actuator.start_zone(front, 1)
        assert await handle.wait() is True

        first = await asyncio.wait_for(subscription.get(), timeout=1.0)
        second = await asyncio.wait_for(subscription.get(), timeout=1.0)

    assert first.type == ZONE_UPDATE and first.data == {"zoneId": front, "isActive": True}
    assert second.type == ZONE_UPDATE and second.data == {"zoneId": front, "isActive": False}
    zone = await store.get_zone(front)
    assert zone is not None
    assert zone.is_active is False
    assert zone.last_watered is not None
    assert relay.calls == [("IrrigationValve1", True), ("IrrigationValve1", False)]


@pytest.mark.anyio
async def test_start_uses_zone_default_duration(store: IrrigationStore, actuator: ZoneActuator) -> None:
    zone = await store.add_zone(name="Herbs", output_channel="IrrigationValve9", default_duration=7)
    _, handle = await actuator.start_zone(zone.id)
    assert handle.minutes == 7
    await actuator.stop_zone(zone.id)


@pytest.mark.anyio
async def test_manual_stop_cancels_pending_timer(store: IrrigationStore, relay: RecordingRelay, bus: EventBus) -> None:
    front, _ = await _two_zones(store)
    timers = TimerRegistry(seconds_per_minute=60.0)
    actuator = ZoneActuator(store=store, relay=relay, bus=bus, timers=timers)

    _, handle = await actuator.start_zone(front, 10)
    assert timers.is_armed(front)

    await actuator.stop_zone(front)

    assert await handle.wait() is False
    assert not timers.is_armed(front)
    zone = await store.get_zone(front)
    assert zone is not None and zone.is_active is False


@pytest.mark.anyio
async def test_stop_all_turns_everything_off(store: IrrigationStore, relay: RecordingRelay, bus: EventBus) -> None:
    _, back = await _two_zones(store)
    # Simulate a zone left active by a previous run.
    await store.set_zone_active(back, True)
    timers = TimerRegistry(seconds_per_minute=60.0)
    actuator = ZoneActuator(store=store, relay=relay, bus=bus, timers=timers)

    stopped = await actuator.stop_all()

    assert stopped == 1
    assert await store.list_active_zones() == []
    assert timers.armed_zone_ids() == []
    assert relay.calls == [("IrrigationValve2", False)]


class SlowBus(EventBus):
    """Bus whose publish yields to the loop, widening the window after a state commit."""

    async def publish(self, event_type, data):
        await asyncio.sleep(0.01)
        return await super().publish(event_type, data)


@pytest.mark.anyio
async def test_stop_racing_start_leaves_no_stale_timer(
    store: IrrigationStore, relay: RecordingRelay, fast_timers: TimerRegistry
) -> None:
    front, _ = await _two_zones(store)
    actuator = ZoneActuator(store=store, relay=relay, bus=SlowBus(), timers=fast_timers)

    await asyncio.gather(actuator.start_zone(front, 5), actuator.stop_zone(front))
    assert fast_timers.is_armed(front) is False

    # 5 "minutes" is 50 ms; wait well past it.
    await asyncio.sleep(0.15)
    zone = await store.get_zone(front)
    assert zone is not None and zone.is_active is False
    assert relay.calls == [("IrrigationValve1", True), ("IrrigationValve1", False)]
