import asyncio
import json
import logging
import sqlite3
import time as time_utils
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

import httpx

from config import settings
from services.models import WeatherSnapshot
from services.storage import IrrigationStore, irrigation_store

logger = logging.getLogger("irrigation.hub.weather")

OPEN_METEO_FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
OWM_CURRENT_URL = "https://api.openweathermap.org/data/2.5/weather"
OWM_FORECAST_URL = "https://api.openweathermap.org/data/2.5/forecast"
DEFAULT_LOCATION = "Location"
OPEN_METEO_RAIN_LIKELY_PCT = 50

WEATHER_CODES: dict[int, tuple[str, str]] = {
    0: ("Clear", "☀️"),
    1: ("Mainly clear", "🌤️"),
    2: ("Partly cloudy", "⛅"),
    3: ("Overcast", "☁️"),
    45: ("Fog", "🌫️"),
    48: ("Depositing rime fog", "🌫️"),
    51: ("Light drizzle", "🌦️"),
    53: ("Drizzle", "🌦️"),
    55: ("Dense drizzle", "🌧️"),
    61: ("Light rain", "🌧️"),
    63: ("Rain", "🌧️"),
    65: ("Heavy rain", "🌧️"),
    71: ("Light snowfall", "🌨️"),
    73: ("Snowfall", "🌨️"),
    75: ("Heavy snowfall", "🌨️"),
    80: ("Light rain showers", "🌦️"),
    81: ("Rain showers", "🌧️"),
    82: ("Violent rain showers", "⛈️"),
    95: ("Thunderstorm", "⛈️"),
    96: ("Thunderstorm with hail", "⛈️"),
    99: ("Thunderstorm with hail", "⛈️"),
}
CONDITION_ICONS: dict[str, str] = {
    "Clear": "☀️",
    "Clouds": "☁️",
    "Rain": "🌧️",
    "Drizzle": "🌦️",
    "Thunderstorm": "⛈️",
    "Snow": "🌨️",
    "Mist": "🌫️",
    "Fog": "🌫️",
}


class WeatherUnavailableError(RuntimeError):
    """Raised by providers when a usable forecast cannot be produced."""


def _round(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(round(value))


def _max_probability(values: list[Any]) -> int:
    numbers = [float(v) for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    return int(round(max(numbers))) if numbers else 0


class WeatherProvider(Protocol):
    name: str

    async def fetch(self, client: httpx.AsyncClient, *, lat: float, lon: float) -> WeatherSnapshot: ...


class OpenMeteoProvider:
    name = "open-meteo"

    async def fetch(self, client: httpx.AsyncClient, *, lat: float, lon: float) -> WeatherSnapshot:
        params = {
            "latitude": lat,
            "longitude": lon,
            "current": "temperature_2m,relative_humidity_2m,weather_code,wind_speed_10m",
            "hourly": "precipitation_probability,weather_code",
            "timezone": "auto",
            "forecast_days": 3,
        }
        response = await client.get(OPEN_METEO_FORECAST_URL, params=params)
        response.raise_for_status()
        location = await self._reverse_geocode(client, lat, lon)
        return self.parse(response.json(), location=location)

    @staticmethod
    def parse(payload: Mapping[str, Any], *, location: str = DEFAULT_LOCATION) -> WeatherSnapshot:
        if not isinstance(payload, Mapping):
            raise WeatherUnavailableError("Open-Meteo response is not an object")
        current = payload.get("current")
        if not isinstance(current, Mapping):
            raise WeatherUnavailableError("Open-Meteo response missing current conditions")
        hourly = payload.get("hourly")
        probabilities: list[Any] = []
        if isinstance(hourly, Mapping) and isinstance(hourly.get("precipitation_probability"), list):
            probabilities = hourly["precipitation_probability"]
        rain_today = _max_probability(probabilities[0:24])
        rain_tomorrow = _max_probability(probabilities[24:48])
        rain_day3 = _max_probability(probabilities[48:72])
        description, icon = WEATHER_CODES.get(current.get("weather_code"), ("Unknown", "🌤️"))
        return WeatherSnapshot(
            temperature=_round(current.get("temperature_2m")),
            humidity=_round(current.get("relative_humidity_2m")),
            wind_speed=_round(current.get("wind_speed_10m")),
            description=description,
            icon=icon,
            rain_probability_today=rain_today,
            rain_probability_tomorrow=rain_tomorrow,
            rain_probability_day3=rain_day3,
            will_rain=rain_today >= OPEN_METEO_RAIN_LIKELY_PCT,
            location_name=location,
            provider=OpenMeteoProvider.name,
            fetched_at=time_utils.time(),
        )

    @staticmethod
    async def _reverse_geocode(client: httpx.AsyncClient, lat: float, lon: float) -> str:
        try:
            response = await client.get(
                NOMINATIM_REVERSE_URL,
                params={"lat": lat, "lon": lon, "format": "json"},
                timeout=5.0,
            )
            response.raise_for_status()
            address = response.json().get("address") or {}
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.debug("Reverse geocoding failed: %s", exc)
            return DEFAULT_LOCATION
        for key in ("city", "town", "village", "suburb"):
            value = address.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return DEFAULT_LOCATION


class OpenWeatherMapProvider:
    name = "openweathermap"

    def __init__(self, api_key: Optional[str] = None) -> None:
        self._api_key = api_key

    async def fetch(self, client: httpx.AsyncClient, *, lat: float, lon: float) -> WeatherSnapshot:
        api_key = self._api_key or settings.weather_api_key
        if not api_key:
            raise WeatherUnavailableError("OpenWeatherMap API key missing")
        params = {"lat": lat, "lon": lon, "appid": api_key, "units": "metric"}
        current_resp = await client.get(OWM_CURRENT_URL, params=params)
        current_resp.raise_for_status()
        forecast_resp = await client.get(OWM_FORECAST_URL, params={**params, "cnt": 24})
        forecast_resp.raise_for_status()
        return self.parse(current_resp.json(), forecast_resp.json())

    @staticmethod
    def parse(current: Mapping[str, Any], forecast: Mapping[str, Any]) -> WeatherSnapshot:
        if not isinstance(current, Mapping) or not isinstance(forecast, Mapping):
            raise WeatherUnavailableError("OpenWeatherMap response is not an object")
        main = current.get("main")
        conditions = current.get("weather")
        if not isinstance(main, Mapping):
            raise WeatherUnavailableError("OpenWeatherMap response missing current conditions")
        if not isinstance(conditions, list) or not conditions or not isinstance(conditions[0], Mapping):
            raise WeatherUnavailableError("OpenWeatherMap response missing weather description")
        condition = conditions[0]
        slots = forecast.get("list")
        if not isinstance(slots, list):
            raise WeatherUnavailableError("OpenWeatherMap forecast missing slot list")

        max_probability = 0.0
        will_rain = False
        for item in slots:
            if not isinstance(item, Mapping):
                continue
            pop = item.get("pop")
            if isinstance(pop, (int, float)):
                max_probability = max(max_probability, float(pop) * 100.0)
            slot_conditions = item.get("weather")
            if (
                isinstance(slot_conditions, list)
                and slot_conditions
                and isinstance(slot_conditions[0], Mapping)
                and slot_conditions[0].get("main") == "Rain"
            ):
                will_rain = True

        wind = current.get("wind")
        wind_speed = wind.get("speed") if isinstance(wind, Mapping) else None
        rain_today = int(round(max_probability))
        return WeatherSnapshot(
            temperature=_round(main.get("temp")),
            humidity=_round(main.get("humidity")),
            wind_speed=_round(wind_speed * 3.6) if isinstance(wind_speed, (int, float)) else None,
            description=str(condition.get("description") or ""),
            icon=CONDITION_ICONS.get(condition.get("main"), "🌤️"),
            rain_probability_today=rain_today,
            rain_probability_tomorrow=0,
            rain_probability_day3=0,
            will_rain=will_rain,
            location_name=current.get("name") or DEFAULT_LOCATION,
            provider=OpenWeatherMapProvider.name,
            fetched_at=time_utils.time(),
        )


@dataclass
class WeatherCache:
    """Single cached snapshot with a freshness window measured on ``clock``."""

    ttl_seconds: float
    clock: Callable[[], float] = time_utils.monotonic
    _value: Optional[WeatherSnapshot] = field(default=None, init=False)
    _stored_at: Optional[float] = field(default=None, init=False)

    def get(self, now: Optional[float] = None) -> Optional[WeatherSnapshot]:
        if self._value is None or self._stored_at is None:
            return None
        current = self.clock() if now is None else now
        if current - self._stored_at >= self.ttl_seconds:
            return None
        return self._value

    def store(self, value: WeatherSnapshot, now: Optional[float] = None) -> None:
        self._value = value
        self._stored_at = self.clock() if now is None else now

    def invalidate(self) -> None:
        self._value = None
        self._stored_at = None

    async def get_or_refresh(
        self,
        refresh: Callable[[], Awaitable[Optional[WeatherSnapshot]]],
        now: Optional[float] = None,
    ) -> Optional[WeatherSnapshot]:
        current = self.clock() if now is None else now
        cached = self.get(current)
        if cached is not None:
            return cached
        fresh = await refresh()
        if fresh is not None:
            self.store(fresh, current)
        return fresh


DEFAULT_PROVIDERS: dict[str, WeatherProvider] = {
    OpenMeteoProvider.name: OpenMeteoProvider(),
    OpenWeatherMapProvider.name: OpenWeatherMapProvider(),
}


class WeatherService:
    """Rain forecast oracle used by schedules and the moisture decision engine."""

    def __init__(
        self,
        *,
        store: IrrigationStore,
        providers: Optional[Mapping[str, WeatherProvider]] = None,
        clock: Callable[[], float] = time_utils.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._store = store
        self._providers = dict(providers) if providers is not None else dict(DEFAULT_PROVIDERS)
        self._cache = WeatherCache(ttl_seconds=settings.weather_cache_minutes * 60.0, clock=clock)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    @property
    def cache(self) -> WeatherCache:
        return self._cache

    @property
    def rain_threshold(self) -> int:
        return settings.rain_threshold

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "User-Agent": settings.weather_user_agent,
                "Accept": "application/json",
            }
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=settings.weather_request_timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def invalidate(self) -> None:
        self._cache.invalidate()

    async def get_weather(self) -> Optional[WeatherSnapshot]:
        """Return the live snapshot, or None when weather is disabled or unavailable."""
        if not settings.weather_enabled:
            return None
        cached = self._cache.get()
        if cached is not None:
            return cached
        async with self._lock:
            return await self._cache.get_or_refresh(self._fetch)

    async def should_skip_for_weather(self) -> bool:
        weather = await self.get_weather()
        if weather is None:
            return False
        threshold = self.rain_threshold
        if weather.rain_probability_today >= threshold:
            logger.info(
                "Watering paused: rain probability %s%% (threshold %s%%)",
                weather.rain_probability_today,
                threshold,
            )
            return True
        if weather.will_rain:
            logger.info("Watering paused: rain forecast")
            return True
        return False

    async def history(self, *, limit: int = 100) -> list[dict[str, Any]]:
        return await self._store.list_weather_log(limit=limit)

    async def _fetch(self) -> Optional[WeatherSnapshot]:
        provider_name = settings.weather_provider
        provider = self._providers.get(provider_name)
        if provider is None:
            logger.error("Unknown weather provider: %s", provider_name)
            return None
        client = await self._get_client()
        try:
            snapshot = await provider.fetch(client, lat=settings.weather_lat, lon=settings.weather_lon)
        except (httpx.HTTPError, WeatherUnavailableError) as exc:
            logger.warning("Weather fetch from %s failed: %s", provider_name, exc)
            return None
        except (json.JSONDecodeError, ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            logger.warning("Malformed weather response from %s: %s", provider_name, exc)
            return None

        try:
            await self._store.append_weather_log(snapshot)
        except sqlite3.Error as exc:
            logger.warning("Failed to record weather history: %s", exc)
        logger.info(
            "Weather updated (%s): %s°C, rain %s%%",
            provider_name,
            snapshot.temperature,
            snapshot.rain_probability_today,
        )
        return snapshot


weather_service = WeatherService(store=irrigation_store)

__all__ = [
    "OpenMeteoProvider",
    "OpenWeatherMapProvider",
    "WeatherCache",
    "WeatherProvider",
    "WeatherService",
    "WeatherUnavailableError",
    "weather_service",
]
