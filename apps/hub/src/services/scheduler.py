from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, time as dt_time, timedelta
from typing import Any, Callable, Iterable, Optional

from config import settings

from .clock import local_now
from .decision import evaluate_zone
from .errors import IrrigationError, SequenceNotFoundError
from .models import Schedule, SequenceStep, WEEKDAY_CODES, split_time
from .sequences import SequenceRunReport, SequenceRunner, sequence_runner
from .storage import IrrigationStore, irrigation_store
from .weather import WeatherService, weather_service
from .zones import ZoneActuator, zone_actuator

logger = logging.getLogger("irrigation.hub.scheduler")

ALL_DAYS: tuple[int, ...] = tuple(WEEKDAY_CODES)


def cron_weekday(moment: datetime) -> int:
    """Weekday code with 0 = Sunday, matching the stored schedule days."""
    return (moment.weekday() + 1) % 7


def next_fire_time(days: Iterable[int], time_text: str, now: datetime) -> datetime:
    """First moment strictly after ``now`` that falls on one of ``days`` at ``time_text``."""
    allowed = set(days)
    if not allowed:
        raise ValueError("No weekdays configured")
    hour, minute = split_time(time_text)
    for offset in range(0, 8):
        day = now.date() + timedelta(days=offset)
        candidate = datetime.combine(day, dt_time(hour, minute), tzinfo=now.tzinfo)
        if candidate <= now:
            continue
        if cron_weekday(candidate) in allowed:
            return candidate
    raise ValueError("Unable to compute next fire time")  # pragma: no cover - 8 days always cover a week


@dataclass(slots=True)
class ScheduleTrigger:
    schedule: Schedule
    task: asyncio.Task[None]

    def to_payload(self) -> dict[str, object]:
        return {
            "scheduleId": self.schedule.id,
            "name": self.schedule.name,
            "pattern": self.schedule.cron_pattern,
            "sequenceId": self.schedule.sequence_id,
        }


class IrrigationScheduler:
    """Owns every time-based trigger: schedules, the auto-water sweep, the daily check and weather refresh."""

    def __init__(
        self,
        *,
        store: IrrigationStore,
        weather: WeatherService,
        actuator: ZoneActuator,
        runner: SequenceRunner,
        clock: Callable[[], datetime] = local_now,
        sweep_interval_seconds: float = 6 * 3600.0,
        daily_check_pause_seconds: float = 120.0,
        weather_refresh_seconds: float = 15 * 60.0,
    ) -> None:
        self._store = store
        self._weather = weather
        self._actuator = actuator
        self._runner = runner
        self._clock = clock
        self._sweep_interval_seconds = max(1.0, float(sweep_interval_seconds))
        self._daily_check_pause_seconds = max(0.0, float(daily_check_pause_seconds))
        self._weather_refresh_seconds = max(1.0, float(weather_refresh_seconds))
        self._triggers: dict[int, ScheduleTrigger] = {}
        self._fires: set[asyncio.Task[None]] = set()
        self._reload_lock = asyncio.Lock()
        self._daily_task: Optional[asyncio.Task[None]] = None
        self._daily_time: Optional[str] = None
        self._loops: list[asyncio.Task[None]] = []
        self._started = False

    # Schedule triggers

    def registered_ids(self) -> list[int]:
        return sorted(self._triggers)

    def triggers(self) -> list[ScheduleTrigger]:
        return [self._triggers[key] for key in sorted(self._triggers)]

    async def reload(self) -> int:
        """Drop every schedule trigger and register one per enabled schedule."""
        async with self._reload_lock:
            self._stop_triggers()
            schedules = await self._store.list_schedules(enabled_only=True)
            for schedule in schedules:
                self._register(schedule)
        logger.info("Loaded %d active schedule(s)", len(self._triggers))
        return len(self._triggers)

    def _register(self, schedule: Schedule) -> None:
        if not schedule.days:
            logger.warning("Schedule #%s has no weekdays; not registered", schedule.id)
            return
        task = asyncio.create_task(self._trigger_loop(schedule), name=f"schedule-{schedule.id}")
        self._triggers[schedule.id] = ScheduleTrigger(schedule=schedule, task=task)
        logger.info("Registered schedule #%s: %s", schedule.id, schedule.cron_pattern)

    def _stop_triggers(self) -> None:
        triggers, self._triggers = self._triggers, {}
        for trigger in triggers.values():
            trigger.task.cancel()

    async def _trigger_loop(self, schedule: Schedule) -> None:
        not_before: Optional[datetime] = None
        while True:
            now = self._clock()
            if not_before is not None and now < not_before:
                now = not_before
            fire_at = next_fire_time(schedule.days, schedule.time, now)
            await asyncio.sleep(max(0.0, (fire_at - self._clock()).total_seconds()))
            not_before = fire_at + timedelta(seconds=1)
            task = asyncio.create_task(self._fire_logged(schedule.id), name=f"schedule-{schedule.id}-fire")
            self._fires.add(task)
            task.add_done_callback(self._fires.discard)

    async def _fire_logged(self, schedule_id: int) -> None:
        try:
            await self.fire(schedule_id)
        except Exception:
            logger.exception("Schedule #%s failed", schedule_id)

    async def fire(self, schedule_id: int) -> Optional[asyncio.Task[SequenceRunReport]]:
        logger.info("Schedule #%s triggered", schedule_id)
        schedule = await self._store.get_schedule(schedule_id)
        if schedule is None or not schedule.enabled:
            logger.warning("Schedule #%s no longer active; skipping", schedule_id)
            return None
        if await self._weather.should_skip_for_weather():
            logger.info("Schedule #%s skipped because of the weather", schedule_id)
            return None
        sequence = await self._store.get_sequence(schedule.sequence_id)
        if sequence is None or not sequence.steps:
            logger.warning(
                "Schedule #%s references missing sequence #%s; skipping",
                schedule_id,
                schedule.sequence_id,
            )
            return None
        logger.info('Schedule #%s starts sequence "%s"', schedule_id, sequence.name)
        return self._runner.start(sequence.steps, name=f'sequence "{sequence.name}"')

    async def create_schedule(self, *, sequence_id: int, days: Iterable[Any], time: str, name: str = "", enabled: bool = True) -> Schedule:
        await self._require_sequence(sequence_id)
        schedule = await self._store.create_schedule(
            sequence_id=sequence_id, days=days, time=time, name=name, enabled=enabled
        )
        await self.reload()
        return schedule

    async def update_schedule(self, schedule_id: int, **fields: Any) -> Schedule:
        if fields.get("sequence_id") is not None:
            await self._require_sequence(fields["sequence_id"])
        schedule = await self._store.update_schedule(schedule_id, **fields)
        await self.reload()
        return schedule

    async def delete_schedule(self, schedule_id: int) -> None:
        await self._store.delete_schedule(schedule_id)
        await self.reload()

    async def _require_sequence(self, sequence_id: int) -> None:
        if await self._store.get_sequence(sequence_id) is None:
            raise SequenceNotFoundError(sequence_id)

    # Auto-water sweep

    async def run_auto_water_sweep(self) -> list[int]:
        """Start every auto-water zone the decision engine says is dry. Returns started zone ids."""
        started: list[int] = []
        for zone in await self._store.list_zones():
            if not zone.auto_water_enabled or zone.moisture is None:
                continue
            try:
                decision = await evaluate_zone(zone, weather=self._weather)
                if not decision.should_water or decision.duration is None:
                    continue
                logger.info("Auto-water starting zone %s: %s", zone.name, decision.reason)
                await self._actuator.start_zone(zone.id, decision.duration)
                started.append(zone.id)
            except (IrrigationError, ValueError) as exc:
                logger.warning("Auto-water for zone %s rejected: %s", zone.name, exc)
        return started

    # Daily full check

    async def run_daily_check(self) -> Optional[SequenceRunReport]:
        logger.info("Daily irrigation check started")
        winter_mode = await self._store.get_winter_mode()
        if winter_mode.enabled:
            logger.info("Winter mode active; daily check skipped")
            return None
        weather = await self._weather.get_weather()
        if weather is not None and weather.rain_probability_today > self._weather.rain_threshold:
            logger.info("High rain probability (%s%%); daily check skipped", weather.rain_probability_today)
            return None

        zones = [zone for zone in await self._store.list_zones() if zone.enabled]
        zones.sort(key=lambda zone: (-zone.priority, zone.id))
        steps: list[SequenceStep] = []
        for zone in zones:
            if zone.moisture is not None and zone.moisture > zone.moisture_threshold:
                logger.info("Zone %s: moisture OK (%s%%)", zone.name, zone.moisture)
                continue
            steps.append(SequenceStep(zone_id=zone.id, duration=zone.default_duration or 10))
        if not steps:
            return SequenceRunReport(name="daily check")
        # Tracked by the runner so stop-all cancels the remaining zones.
        task = self._runner.start(steps, name="daily check", pause_seconds=self._daily_check_pause_seconds)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task.cancelled():
            logger.info("Daily irrigation check cancelled")
            return None
        return task.result()

    async def reschedule_daily_check(self) -> Optional[str]:
        """Re-read the daily check settings and (re)arm its trigger. Returns the active time or None."""
        if self._daily_task is not None:
            self._daily_task.cancel()
            self._daily_task = None
            self._daily_time = None
        enabled, check_time = await self._store.get_daily_check()
        if not enabled:
            logger.info("Daily irrigation check disabled")
            return None
        try:
            split_time(check_time)
        except ValueError:
            logger.warning("Invalid daily check time %r; daily check disabled", check_time)
            return None
        self._daily_time = check_time
        self._daily_task = asyncio.create_task(self._daily_check_loop(check_time), name="daily-check")
        logger.info("Daily irrigation check scheduled for %s", check_time)
        return check_time

    @property
    def daily_check_time(self) -> Optional[str]:
        return self._daily_time

    async def _daily_check_loop(self, check_time: str) -> None:
        not_before: Optional[datetime] = None
        while True:
            now = self._clock()
            if not_before is not None and now < not_before:
                now = not_before
            fire_at = next_fire_time(ALL_DAYS, check_time, now)
            await asyncio.sleep(max(0.0, (fire_at - self._clock()).total_seconds()))
            not_before = fire_at + timedelta(seconds=1)
            try:
                await self.run_daily_check()
            except Exception as exc:  # pragma: no cover
                logger.warning("Daily irrigation check failed: %s", exc)

    # Lifecycle

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.reload()
        await self.reschedule_daily_check()
        self._loops = [
            asyncio.create_task(self._sweep_loop(), name="auto-water-sweep"),
            asyncio.create_task(self._weather_loop(), name="weather-refresh"),
        ]
        logger.info("Scheduler started (sweep every %.0fs)", self._sweep_interval_seconds)

    async def stop(self) -> None:
        self._stop_triggers()
        tasks = list(self._loops) + list(self._fires)
        if self._daily_task is not None:
            tasks.append(self._daily_task)
        self._loops = []
        self._daily_task = None
        self._daily_time = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # pragma: no cover
                logger.warning("Scheduler task terminated with error: %s", exc)
        if self._started:
            logger.info("Scheduler stopped")
        self._started = False

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            logger.info("Checking automatic irrigation")
            try:
                await self.run_auto_water_sweep()
            except Exception as exc:  # pragma: no cover
                logger.warning("Auto-water sweep failed: %s", exc)

    async def _weather_loop(self) -> None:
        while True:
            await asyncio.sleep(self._weather_refresh_seconds)
            if not settings.weather_enabled:
                continue
            try:
                await self._weather.get_weather()
            except Exception as exc:  # pragma: no cover
                logger.warning("Weather refresh failed: %s", exc)


irrigation_scheduler = IrrigationScheduler(
    store=irrigation_store,
    weather=weather_service,
    actuator=zone_actuator,
    runner=sequence_runner,
    sweep_interval_seconds=settings.auto_water_interval_hours * 3600.0,
    daily_check_pause_seconds=settings.daily_check_pause_seconds,
    weather_refresh_seconds=settings.weather_refresh_minutes * 60.0,
)

__all__ = [
    "IrrigationScheduler",
    "ScheduleTrigger",
    "cron_weekday",
    "irrigation_scheduler",
    "next_fire_time",
]
