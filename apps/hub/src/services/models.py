from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from .errors import ValidationError

TIME_PATTERN = re.compile(r"^(?:[01]?\d|2[0-3]):[0-5]\d$")
WEEKDAY_CODES = range(0, 7)  # 0 = Sunday ... 6 = Saturday


def normalize_time(value: Any) -> str:
    if not isinstance(value, str) or not TIME_PATTERN.fullmatch(value.strip()):
        raise ValidationError(f"Invalid time {value!r}; expected HH:MM")
    hours_text, minutes_text = value.strip().split(":")
    return f"{int(hours_text):02d}:{int(minutes_text):02d}"


def split_time(value: str) -> tuple[int, int]:
    hours_text, minutes_text = normalize_time(value).split(":")
    return int(hours_text), int(minutes_text)


def normalize_days(values: Iterable[Any]) -> tuple[int, ...]:
    days: set[int] = set()
    for value in values:
        try:
            day = int(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid weekday {value!r}") from exc
        if day not in WEEKDAY_CODES:
            raise ValidationError(f"Invalid weekday {value!r}; expected 0-6")
        days.add(day)
    if not days:
        raise ValidationError("At least one weekday is required")
    return tuple(sorted(days))


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="seconds")


@dataclass(slots=True)
class Zone:
    id: int
    name: str
    output_channel: str
    input_channel: str = ""
    position: str = ""
    moisture: Optional[int] = None
    moisture_threshold: int = 30
    moisture_optimal: int = 60
    auto_water_enabled: bool = False
    default_duration: int = 10
    enabled: bool = True
    priority: int = 5
    is_active: bool = False
    last_watered: Optional[datetime] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "position": self.position,
            "outputChannel": self.output_channel,
            "inputChannel": self.input_channel,
            "moisture": self.moisture,
            "moistureThreshold": self.moisture_threshold,
            "moistureOptimal": self.moisture_optimal,
            "autoWaterEnabled": self.auto_water_enabled,
            "defaultDuration": self.default_duration,
            "enabled": self.enabled,
            "priority": self.priority,
            "isActive": self.is_active,
            "lastWatered": _iso(self.last_watered),
        }


@dataclass(frozen=True, slots=True)
class SequenceStep:
    zone_id: int
    duration: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SequenceStep":
        zone_value = payload.get("zone_id", payload.get("zoneId"))
        duration_value = payload.get("duration", payload.get("durationMinutes"))
        try:
            zone_id = int(zone_value)
            duration = int(duration_value)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Sequence steps need a zone_id and a duration") from exc
        if duration <= 0:
            raise ValidationError("Step duration must be greater than zero")
        return cls(zone_id=zone_id, duration=duration)

    def to_payload(self) -> dict[str, int]:
        return {"zone_id": self.zone_id, "duration": self.duration}


@dataclass(frozen=True, slots=True)
class Sequence:
    id: int
    name: str
    steps: tuple[SequenceStep, ...]
    created_at: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "zones": [step.to_payload() for step in self.steps],
            "createdAt": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class Schedule:
    id: int
    name: str
    sequence_id: int
    days: tuple[int, ...]
    time: str
    enabled: bool = True
    created_at: Optional[str] = None

    @property
    def cron_pattern(self) -> str:
        hour, minute = split_time(self.time)
        return f"{minute} {hour} * * {','.join(str(day) for day in self.days)}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "sequenceId": self.sequence_id,
            "days": list(self.days),
            "time": self.time,
            "enabled": self.enabled,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class WinterMode:
    enabled: bool = False
    activated_at: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "activatedAt": self.activated_at}


@dataclass(frozen=True, slots=True)
class WeatherSnapshot:
    temperature: Optional[float]
    humidity: Optional[float]
    wind_speed: Optional[float]
    description: str
    rain_probability_today: int
    rain_probability_tomorrow: int
    rain_probability_day3: int
    will_rain: bool
    location_name: str
    provider: str
    icon: str = ""
    fetched_at: float = field(default=0.0)

    def to_payload(self) -> dict[str, Any]:
        return {
            "current": {
                "temperature": self.temperature,
                "humidity": self.humidity,
                "windSpeed": self.wind_speed,
                "description": self.description,
                "icon": self.icon,
            },
            "forecast": {
                "rainProbability": self.rain_probability_today,
                "willRain": self.will_rain,
                "daily": [
                    self.rain_probability_today,
                    self.rain_probability_tomorrow,
                    self.rain_probability_day3,
                ],
            },
            "location": self.location_name,
            "provider": self.provider,
            "timestamp": int(self.fetched_at * 1000),
        }


__all__ = [
    "Schedule",
    "Sequence",
    "SequenceStep",
    "TIME_PATTERN",
    "WeatherSnapshot",
    "WinterMode",
    "Zone",
    "normalize_days",
    "normalize_time",
    "split_time",
]
