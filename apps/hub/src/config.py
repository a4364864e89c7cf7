from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Load apps/hub/.env and accept env keys in any case
    _env_file = Path(__file__).resolve().parent.parent / ".env"
    model_config = SettingsConfigDict(env_file=str(_env_file), extra="ignore", case_sensitive=False)

    app_name: str = "Smart Irrigation Hub"
    app_version: str = "1.4.0"
    debug: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    irrigation_db: str = Field(
        default="data/irrigation.sqlite",
        description="SQLite database holding zones, sequences, schedules, settings and the weather log.",
    )
    timezone: str | None = Field(
        default=None,
        description="IANA timezone used for schedules (e.g. Europe/Vienna). Blank uses the host's local time.",
    )
    default_zone_count: int = Field(default=12, ge=0, le=64, description="Zones seeded into an empty database.")
    scheduler_enabled: bool = Field(default=True, description="Start schedule triggers and periodic sweeps on startup.")

    # Loxone relay backend
    loxone_host: str | None = Field(default=None, description="Miniserver host[:port]; blank disables relay calls.")
    loxone_username: str | None = None
    loxone_password: str | None = None
    relay_timeout: float = Field(default=5.0, ge=0.5, description="Timeout in seconds for relay HTTP calls")

    # Weather
    weather_enabled: bool = True
    weather_provider: str = Field(default="open-meteo", description="open-meteo or openweathermap")
    weather_api_key: str | None = Field(default=None, description="API key for OpenWeatherMap")
    weather_lat: float = 48.2082
    weather_lon: float = 16.3738
    weather_user_agent: str = Field(
        default="SmartIrrigationHub/1.4 (support@example.com)",
        description="User-Agent sent to upstream weather and geocoding providers.",
    )
    weather_request_timeout: float = Field(default=10.0, ge=1.0, description="Timeout in seconds for weather HTTP calls")
    weather_cache_minutes: float = Field(default=15.0, ge=0.0, description="Freshness window of the live weather snapshot")
    weather_refresh_minutes: float = Field(default=15.0, ge=1.0, description="Interval of the background weather refresh")
    rain_threshold: int = Field(default=70, ge=0, le=100, description="Rain probability (%) at which watering is skipped")

    # MQTT
    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_client_id: str = "irrigation-hub"
    mqtt_tls: bool = False
    mqtt_base_topic: str = "irrigation"

    # Watering engine
    sequence_step_pause_seconds: float = Field(default=2.0, ge=0.0, description="Pause between sequence steps")
    auto_water_interval_hours: float = Field(default=6.0, gt=0.0, description="Interval of the moisture auto-water sweep")
    daily_check_pause_seconds: float = Field(default=120.0, ge=0.0, description="Pause between zones in the daily check")
    remote_start_minutes: int = Field(default=10, ge=1, description="Run time for zones started by remote command")

    @field_validator("cors_origins", mode="before")
    @classmethod
    def normalize_cors(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            if s in ("", "*"):
                return ["*"]
            return [p.strip() for p in s.split(",")]
        return v

    @field_validator("weather_provider", mode="before")
    @classmethod
    def normalize_provider(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("timezone", "loxone_host", "weather_api_key", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

settings = Settings()
