from __future__ import annotations


class IrrigationError(RuntimeError):
    """Base class for failures surfaced to callers with a readable reason."""


class NotFoundError(IrrigationError):
    """Raised when a zone, sequence or schedule id is unknown."""


class ZoneNotFoundError(NotFoundError):
    def __init__(self, zone_id: int) -> None:
        super().__init__(f"Zone {zone_id} not found")
        self.zone_id = zone_id


class SequenceNotFoundError(NotFoundError):
    def __init__(self, sequence_id: int) -> None:
        super().__init__(f"Sequence {sequence_id} not found")
        self.sequence_id = sequence_id


class ScheduleNotFoundError(NotFoundError):
    def __init__(self, schedule_id: int) -> None:
        super().__init__(f"Schedule {schedule_id} not found")
        self.schedule_id = schedule_id


class ZoneConflictError(IrrigationError):
    """Raised when a zone start is refused because another zone is running."""

    def __init__(self, active_zone_id: int, active_zone_name: str) -> None:
        super().__init__(f'Zone "{active_zone_name}" is already running. Stop it first.')
        self.active_zone_id = active_zone_id
        self.active_zone_name = active_zone_name


class WinterModeActiveError(IrrigationError):
    def __init__(self) -> None:
        super().__init__("Winter mode is active; irrigation is disabled")


class ValidationError(IrrigationError, ValueError):
    """Raised before any state mutation when required input is missing or malformed."""


__all__ = [
    "IrrigationError",
    "NotFoundError",
    "ZoneNotFoundError",
    "SequenceNotFoundError",
    "ScheduleNotFoundError",
    "ZoneConflictError",
    "WinterModeActiveError",
    "ValidationError",
]
