from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from config import settings

from .errors import IrrigationError
from .models import SequenceStep
from .zones import ZoneActuator, zone_actuator

logger = logging.getLogger("irrigation.hub.sequences")


@dataclass(slots=True)
class SequenceRunReport:
    name: str
    completed: list[int] = field(default_factory=list)
    interrupted: list[int] = field(default_factory=list)
    failed: list[tuple[int, str]] = field(default_factory=list)


class SequenceRunner:
    """Runs (zone, duration) steps strictly one after another.

    A step is finished once its zone has been switched off by the auto-off
    timer (or stopped manually). A failing step is logged and skipped.
    """

    def __init__(self, *, actuator: ZoneActuator, step_pause_seconds: float = 2.0) -> None:
        self._actuator = actuator
        self._step_pause_seconds = max(0.0, float(step_pause_seconds))
        self._runs: set[asyncio.Task[SequenceRunReport]] = set()

    @property
    def running_count(self) -> int:
        return sum(1 for task in self._runs if not task.done())

    async def run(
        self,
        steps: Iterable[SequenceStep],
        *,
        name: str = "sequence",
        pause_seconds: Optional[float] = None,
    ) -> SequenceRunReport:
        pause = self._step_pause_seconds if pause_seconds is None else max(0.0, pause_seconds)
        step_list = list(steps)
        report = SequenceRunReport(name=name)
        logger.info("Starting %s with %d step(s)", name, len(step_list))

        for index, step in enumerate(step_list):
            try:
                _, handle = await self._actuator.start_zone(step.zone_id, step.duration)
            except (IrrigationError, ValueError) as exc:
                logger.warning("%s: zone %s failed: %s", name, step.zone_id, exc)
                report.failed.append((step.zone_id, str(exc)))
                continue

            if await handle.wait():
                report.completed.append(step.zone_id)
                logger.info("%s: zone %s finished", name, step.zone_id)
            else:
                report.interrupted.append(step.zone_id)
                logger.info("%s: zone %s stopped early", name, step.zone_id)

            if index < len(step_list) - 1 and pause > 0:
                await asyncio.sleep(pause)

        logger.info(
            "%s finished (%d completed, %d interrupted, %d failed)",
            name,
            len(report.completed),
            len(report.interrupted),
            len(report.failed),
        )
        return report

    def start(
        self,
        steps: Iterable[SequenceStep],
        *,
        name: str = "sequence",
        pause_seconds: Optional[float] = None,
    ) -> asyncio.Task[SequenceRunReport]:
        """Launch ``run`` in the background and return immediately."""
        task = asyncio.create_task(self.run(list(steps), name=name, pause_seconds=pause_seconds), name=f"run-{name}")
        self._runs.add(task)
        task.add_done_callback(self._on_run_done)
        return task

    def cancel_all(self) -> int:
        tasks = [task for task in self._runs if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Cancelled %d running sequence(s)", len(tasks))
        return len(tasks)

    def _on_run_done(self, task: asyncio.Task[SequenceRunReport]) -> None:
        self._runs.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sequence run %s crashed: %s", task.get_name(), exc)


sequence_runner = SequenceRunner(actuator=zone_actuator, step_pause_seconds=settings.sequence_step_pause_seconds)

__all__ = ["SequenceRunReport", "SequenceRunner", "sequence_runner"]
