import asyncio
from datetime import datetime, timezone
from typing import Optional

import pytest

from services.errors import SequenceNotFoundError
from services.models import SequenceStep, WeatherSnapshot
from services.scheduler import IrrigationScheduler, cron_weekday, next_fire_time
from services.sequences import SequenceRunner, SequenceRunReport
from services.storage import IrrigationStore
from services.zones import ZoneActuator

from conftest import RecordingRelay

# 2026-10-19 is a Monday (cron weekday 1).
MONDAY_6AM = datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc)


class StubWeather:
    rain_threshold = 70

    def __init__(self, snapshot: Optional[WeatherSnapshot] = None, *, skip: bool = False) -> None:
        self.snapshot = snapshot
        self.skip = skip

    async def get_weather(self) -> Optional[WeatherSnapshot]:
        return self.snapshot

    async def should_skip_for_weather(self) -> bool:
        return self.skip


class RecordingRunner:
    def __init__(self) -> None:
        self.started: list[tuple[list[SequenceStep], str]] = []
        self.ran: list[tuple[list[SequenceStep], str, Optional[float]]] = []
        self.fired = asyncio.Event()

    def start(self, steps, *, name="sequence", pause_seconds=None):
        step_list = list(steps)
        self.started.append((step_list, name))
        self.fired.set()
        return asyncio.create_task(self.run(step_list, name=name, pause_seconds=pause_seconds))

    async def run(self, steps, *, name="sequence", pause_seconds=None):
        step_list = list(steps)
        self.ran.append((step_list, name, pause_seconds))
        return SequenceRunReport(name=name, completed=[step.zone_id for step in step_list])


class RecordingActuator:
    def __init__(self) -> None:
        self.starts: list[tuple[int, Optional[int]]] = []

    async def start_zone(self, zone_id: int, minutes: Optional[int] = None):
        self.starts.append((zone_id, minutes))
        return None, None


def _rain(today: int) -> WeatherSnapshot:
    return WeatherSnapshot(
        temperature=15.0,
        humidity=80.0,
        wind_speed=10.0,
        description="Rain",
        rain_probability_today=today,
        rain_probability_tomorrow=0,
        rain_probability_day3=0,
        will_rain=today >= 50,
        location_name="Vienna",
        provider="stub",
    )


def _scheduler(store: IrrigationStore, *, weather=None, runner=None, actuator=None, clock=None) -> IrrigationScheduler:
    return IrrigationScheduler(
        store=store,
        weather=weather or StubWeather(),
        actuator=actuator or RecordingActuator(),
        runner=runner or RecordingRunner(),
        clock=clock or (lambda: MONDAY_6AM),
        daily_check_pause_seconds=120,
    )


def test_cron_weekday_counts_from_sunday():
    assert cron_weekday(MONDAY_6AM) == 1
    assert cron_weekday(datetime(2026, 10, 25, tzinfo=timezone.utc)) == 0
    assert cron_weekday(datetime(2026, 10, 24, tzinfo=timezone.utc)) == 6


def test_next_fire_time_same_day_later():
    assert next_fire_time([1], "06:30", MONDAY_6AM) == datetime(2026, 10, 19, 6, 30, tzinfo=timezone.utc)


def test_next_fire_time_skips_current_minute_to_next_week():
    assert next_fire_time([1], "06:00", MONDAY_6AM) == datetime(2026, 10, 26, 6, 0, tzinfo=timezone.utc)


def test_next_fire_time_picks_nearest_listed_day():
    assert next_fire_time([3, 5], "05:00", MONDAY_6AM) == datetime(2026, 10, 21, 5, 0, tzinfo=timezone.utc)
    assert next_fire_time([0], "07:00", MONDAY_6AM) == datetime(2026, 10, 25, 7, 0, tzinfo=timezone.utc)


def test_next_fire_time_requires_days():
    with pytest.raises(ValueError):
        next_fire_time([], "06:00", MONDAY_6AM)


@pytest.mark.anyio
async def test_reload_after_deleting_a_schedule_drops_only_that_trigger(store: IrrigationStore) -> None:
    sequence = await store.create_sequence("Morning", [SequenceStep(1, 5)])
    for hour in ("05:00", "06:00", "07:00", "08:00"):
        await store.create_schedule(sequence_id=sequence.id, days=[1, 3], time=hour)
    await store.create_schedule(sequence_id=sequence.id, days=[2], time="09:00", enabled=False)
    scheduler = _scheduler(store)
    try:
        assert await scheduler.reload() == 4
        assert scheduler.registered_ids() == [1, 2, 3, 4]

        await scheduler.delete_schedule(3)
        assert scheduler.registered_ids() == [1, 2, 4]
        assert [trigger.schedule.time for trigger in scheduler.triggers()] == ["05:00", "06:00", "08:00"]
    finally:
        await scheduler.stop()
    assert scheduler.registered_ids() == []


@pytest.mark.anyio
async def test_create_schedule_requires_existing_sequence(store: IrrigationStore) -> None:
    scheduler = _scheduler(store)
    with pytest.raises(SequenceNotFoundError):
        await scheduler.create_schedule(sequence_id=42, days=[1], time="06:00")
    assert await store.list_schedules() == []


@pytest.mark.anyio
async def test_fire_starts_the_referenced_sequence(store: IrrigationStore) -> None:
    runner = RecordingRunner()
    scheduler = _scheduler(store, runner=runner)
    sequence = await store.create_sequence("Morning", [SequenceStep(1, 5), SequenceStep(2, 3)])
    schedule = await store.create_schedule(sequence_id=sequence.id, days=[1], time="06:30")

    task = await scheduler.fire(schedule.id)
    assert task is not None
    report = await task
    assert report.completed == [1, 2]
    steps, name = runner.started[0]
    assert [(step.zone_id, step.duration) for step in steps] == [(1, 5), (2, 3)]
    assert "Morning" in name


@pytest.mark.anyio
async def test_fire_skips_when_weather_says_rain(store: IrrigationStore) -> None:
    runner = RecordingRunner()
    scheduler = _scheduler(store, runner=runner, weather=StubWeather(skip=True))
    sequence = await store.create_sequence("Morning", [SequenceStep(1, 5)])
    schedule = await store.create_schedule(sequence_id=sequence.id, days=[1], time="06:30")

    assert await scheduler.fire(schedule.id) is None
    assert runner.started == []


@pytest.mark.anyio
async def test_schedule_with_deleted_sequence_is_inert(store: IrrigationStore) -> None:
    runner = RecordingRunner()
    scheduler = _scheduler(store, runner=runner)
    sequence = await store.create_sequence("Morning", [SequenceStep(1, 5)])
    schedule = await store.create_schedule(sequence_id=sequence.id, days=[1], time="06:30")
    await store.delete_sequence(sequence.id)

    assert await scheduler.fire(schedule.id) is None
    assert runner.started == []


@pytest.mark.anyio
async def test_trigger_fires_at_the_scheduled_minute(store: IrrigationStore) -> None:
    runner = RecordingRunner()
    almost = datetime(2026, 10, 19, 6, 29, 59, 950000, tzinfo=timezone.utc)
    scheduler = _scheduler(store, runner=runner, clock=lambda: almost)
    sequence = await store.create_sequence("Morning", [SequenceStep(1, 5)])
    await store.create_schedule(sequence_id=sequence.id, days=[1], time="06:30")
    try:
        await scheduler.reload()
        await asyncio.wait_for(runner.fired.wait(), timeout=2.0)
    finally:
        await scheduler.stop()
    assert len(runner.started) == 1


@pytest.mark.anyio
async def test_auto_water_sweep_starts_only_dry_auto_zones(store: IrrigationStore) -> None:
    actuator = RecordingActuator()
    scheduler = _scheduler(store, actuator=actuator)
    dry = await store.add_zone(name="Dry", output_channel="IrrigationValve1", input_channel="s1", auto_water_enabled=True)
    await store.add_zone(name="Wet", output_channel="IrrigationValve2", input_channel="s2", auto_water_enabled=True)
    await store.add_zone(name="Manual", output_channel="IrrigationValve3", input_channel="s3")
    unknown = await store.add_zone(name="Unknown", output_channel="IrrigationValve4", auto_water_enabled=True)
    await store.update_moisture_by_input("s1", 10)
    await store.update_moisture_by_input("s2", 70)
    await store.update_moisture_by_input("s3", 10)

    started = await scheduler.run_auto_water_sweep()

    assert started == [dry.id]
    assert actuator.starts == [(dry.id, 10)]
    assert unknown.id not in started


@pytest.mark.anyio
async def test_daily_check_orders_by_priority_and_skips_moist_zones(store: IrrigationStore) -> None:
    runner = RecordingRunner()
    scheduler = _scheduler(store, runner=runner, weather=StubWeather(_rain(20)))
    low = await store.add_zone(
        name="Low", output_channel="IrrigationValve1", input_channel="s1", priority=1, default_duration=4
    )
    high = await store.add_zone(name="High", output_channel="IrrigationValve2", priority=9, default_duration=6)
    await store.add_zone(name="Moist", output_channel="IrrigationValve3", input_channel="s3", priority=9)
    disabled = await store.add_zone(name="Off", output_channel="IrrigationValve4", enabled=False)
    await store.update_moisture_by_input("s3", 55)
    await store.update_moisture_by_input("s1", 20)

    report = await scheduler.run_daily_check()

    assert report is not None
    steps, _, pause = runner.ran[0]
    assert [(step.zone_id, step.duration) for step in steps] == [(high.id, 6), (low.id, 4)]
    assert pause == 120
    assert disabled.id not in report.completed


@pytest.mark.anyio
async def test_daily_check_respects_winter_mode_and_rain(store: IrrigationStore) -> None:
    await store.add_zone(name="Bed", output_channel="IrrigationValve1")
    runner = RecordingRunner()

    rainy = _scheduler(store, runner=runner, weather=StubWeather(_rain(80)))
    assert await rainy.run_daily_check() is None

    await store.set_winter_mode(True)
    dry = _scheduler(store, runner=runner, weather=StubWeather(_rain(0)))
    assert await dry.run_daily_check() is None
    assert runner.ran == []


@pytest.mark.anyio
async def test_reschedule_daily_check_follows_settings(store: IrrigationStore) -> None:
    scheduler = _scheduler(store)
    try:
        assert await scheduler.reschedule_daily_check() is None

        await store.set_daily_check(enabled=True, time="5:15")
        assert await scheduler.reschedule_daily_check() == "05:15"
        assert scheduler.daily_check_time == "05:15"
    finally:
        await scheduler.stop()
    assert scheduler.daily_check_time is None


@pytest.mark.anyio
async def test_stop_all_during_daily_check_leaves_nothing_running(
    store: IrrigationStore, actuator: ZoneActuator, relay: RecordingRelay
) -> None:
    runner = SequenceRunner(actuator=actuator, step_pause_seconds=0)
    scheduler = IrrigationScheduler(
        store=store,
        weather=StubWeather(),
        actuator=actuator,
        runner=runner,
        clock=lambda: MONDAY_6AM,
        daily_check_pause_seconds=0.05,
    )
    # 100 "minutes" at 10 ms each keeps each zone running until stopped.
    first = await store.add_zone(name="A", output_channel="V1", default_duration=100)
    await store.add_zone(name="B", output_channel="V2", default_duration=100)

    check = asyncio.create_task(scheduler.run_daily_check())
    for _ in range(200):
        zone = await store.get_zone(first.id)
        if zone is not None and zone.is_active:
            break
        await asyncio.sleep(0.005)
    assert runner.running_count == 1

    assert runner.cancel_all() == 1
    await actuator.stop_all()
    assert await asyncio.wait_for(check, timeout=1.0) is None

    await asyncio.sleep(0.2)
    assert await store.list_active_zones() == []
    assert relay.calls == [("V1", True), ("V1", False)]
