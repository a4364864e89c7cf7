from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .models import WeatherSnapshot, Zone
from .weather import WeatherService, weather_service

logger = logging.getLogger("irrigation.hub.decision")

BASE_DURATION_MINUTES = 10
MAX_DURATION_MINUTES = 30
UNKNOWN_WEATHER_DURATION_MINUTES = 10
MINUTES_PER_DEFICIT_STEP = 2
DEFICIT_STEP_PCT = 5


@dataclass(frozen=True, slots=True)
class Decision:
    should_water: bool
    reason: str
    duration: Optional[int] = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"shouldWater": self.should_water, "reason": self.reason}
        if self.duration is not None:
            payload["duration"] = self.duration
        return payload


def watering_duration(moisture: int, optimal: int) -> int:
    """Linear ramp on the moisture deficit: 10 min base, +2 min per 5 %, capped at 30."""
    deficit = max(0, optimal - moisture)
    return min(BASE_DURATION_MINUTES + (deficit // DEFICIT_STEP_PCT) * MINUTES_PER_DEFICIT_STEP, MAX_DURATION_MINUTES)


def moisture_verdict(zone: Zone) -> Optional[Decision]:
    """Decide from moisture alone; None means the zone is critically dry and weather must be consulted."""
    if zone.moisture is None:
        return Decision(False, "No moisture reading")
    if zone.moisture >= zone.moisture_optimal:
        return Decision(False, f"Moisture sufficient ({zone.moisture}%)")
    if zone.moisture > zone.moisture_threshold:
        return Decision(False, f"Above threshold, not yet critical ({zone.moisture}%)")
    return None


def decide(zone: Zone, weather: Optional[WeatherSnapshot], rain_threshold: int) -> Decision:
    verdict = moisture_verdict(zone)
    if verdict is not None:
        return verdict

    if weather is None:
        return Decision(True, "Critically dry, weather unknown", UNKNOWN_WEATHER_DURATION_MINUTES)
    if weather.rain_probability_today >= rain_threshold:
        return Decision(False, f"{weather.rain_probability_today}% rain expected today")
    if weather.rain_probability_tomorrow >= rain_threshold:
        return Decision(False, f"{weather.rain_probability_tomorrow}% rain expected tomorrow")

    duration = watering_duration(zone.moisture, zone.moisture_optimal)
    return Decision(True, f"Too dry ({zone.moisture}%), no rain in sight", duration)


async def evaluate_zone(zone: Zone, *, weather: WeatherService = weather_service) -> Decision:
    verdict = moisture_verdict(zone)
    if verdict is None:
        snapshot = await weather.get_weather()
        verdict = decide(zone, snapshot, weather.rain_threshold)
    logger.info(
        "Zone %s: %s (%s)",
        zone.name,
        "water" if verdict.should_water else "skip",
        verdict.reason,
    )
    return verdict


__all__ = ["Decision", "decide", "evaluate_zone", "moisture_verdict", "watering_duration"]
