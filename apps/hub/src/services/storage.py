from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional

from config import settings

from .errors import ScheduleNotFoundError, SequenceNotFoundError, ValidationError, ZoneNotFoundError
from .models import (
    Schedule,
    Sequence,
    SequenceStep,
    WeatherSnapshot,
    WinterMode,
    Zone,
    normalize_days,
    normalize_time,
)

logger = logging.getLogger("irrigation.hub.store")

ZONE_UPDATABLE_FIELDS = {
    "name",
    "position",
    "output_channel",
    "input_channel",
    "moisture_threshold",
    "moisture_optimal",
    "auto_water_enabled",
    "default_duration",
    "enabled",
    "priority",
}
SCHEDULE_UPDATABLE_FIELDS = {"name", "sequence_id", "days", "time", "enabled"}
BOOLEAN_COLUMNS = {"auto_water_enabled", "enabled"}

DAILY_CHECK_ENABLED_KEY = "daily_check_enabled"
DAILY_CHECK_TIME_KEY = "daily_check_time"
WINTER_MODE_ENABLED_KEY = "winter_mode_enabled"
WINTER_MODE_ACTIVATED_KEY = "winter_mode_activated_at"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError:
        return None


def _zone_from_row(row: sqlite3.Row) -> Zone:
    return Zone(
        id=int(row["id"]),
        name=row["name"],
        output_channel=row["output_channel"] or "",
        input_channel=row["input_channel"] or "",
        position=row["position"] or "",
        moisture=int(row["moisture"]) if row["moisture"] is not None else None,
        moisture_threshold=int(row["moisture_threshold"]),
        moisture_optimal=int(row["moisture_optimal"]),
        auto_water_enabled=bool(row["auto_water_enabled"]),
        default_duration=int(row["default_duration"]),
        enabled=bool(row["enabled"]),
        priority=int(row["priority"]),
        is_active=bool(row["is_active"]),
        last_watered=_parse_datetime(row["last_watered"]),
    )


def _sequence_from_row(row: sqlite3.Row) -> Sequence:
    try:
        raw_steps = json.loads(row["zones"])
    except (TypeError, json.JSONDecodeError):
        logger.warning("Sequence #%s has unreadable steps", row["id"])
        raw_steps = []
    steps: list[SequenceStep] = []
    for entry in raw_steps if isinstance(raw_steps, list) else []:
        if not isinstance(entry, Mapping):
            continue
        try:
            steps.append(SequenceStep.from_payload(entry))
        except ValidationError:
            logger.warning("Skipping malformed step in sequence #%s: %r", row["id"], entry)
    return Sequence(id=int(row["id"]), name=row["name"], steps=tuple(steps), created_at=row["created_at"])


def _schedule_from_row(row: sqlite3.Row) -> Schedule:
    try:
        days = tuple(sorted(int(day) for day in json.loads(row["days"])))
    except (TypeError, ValueError, json.JSONDecodeError):
        days = ()
    return Schedule(
        id=int(row["id"]),
        name=row["name"] or "",
        sequence_id=int(row["sequence_id"]),
        days=days,
        time=row["time"],
        enabled=bool(row["enabled"]),
        created_at=row["created_at"],
    )


class IrrigationStore:
    """SQLite-backed persistence for zones, sequences, schedules, settings and the weather log."""

    def __init__(self, *, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @property
    def path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS zones (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    position TEXT,
                    output_channel TEXT NOT NULL,
                    input_channel TEXT,
                    moisture INTEGER,
                    moisture_threshold INTEGER NOT NULL DEFAULT 30,
                    moisture_optimal INTEGER NOT NULL DEFAULT 60,
                    auto_water_enabled INTEGER NOT NULL DEFAULT 0,
                    default_duration INTEGER NOT NULL DEFAULT 10,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    priority INTEGER NOT NULL DEFAULT 5,
                    is_active INTEGER NOT NULL DEFAULT 0,
                    last_watered TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS sequences (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    zones TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS schedules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT,
                    sequence_id INTEGER NOT NULL,
                    days TEXT NOT NULL,
                    time TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS weather_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    temperature REAL,
                    humidity REAL,
                    rain_probability INTEGER,
                    wind_speed REAL,
                    description TEXT,
                    provider TEXT,
                    timestamp TEXT DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );
                """
            )

    async def clear(self) -> None:
        async with self._lock:
            with self._connection() as conn:
                for table in ("zones", "sequences", "schedules", "weather_log", "settings"):
                    conn.execute(f"DELETE FROM {table};")
                conn.execute("DELETE FROM sqlite_sequence;")

    # Zones

    async def seed_default_zones(self, count: int) -> int:
        async with self._lock:
            with self._connection() as conn:
                existing = conn.execute("SELECT COUNT(*) FROM zones;").fetchone()[0]
                if existing or count <= 0:
                    return 0
                conn.executemany(
                    "INSERT INTO zones (name, output_channel, input_channel) VALUES (?, ?, ?);",
                    [(f"Zone {n}", f"IrrigationValve{n}", f"IrrigationMoisture{n}") for n in range(1, count + 1)],
                )
        logger.info("Seeded %d default zones", count)
        return count

    async def list_zones(self) -> list[Zone]:
        async with self._lock:
            with self._connection() as conn:
                rows = conn.execute("SELECT * FROM zones ORDER BY id ASC;").fetchall()
        return [_zone_from_row(row) for row in rows]

    async def get_zone(self, zone_id: int) -> Optional[Zone]:
        async with self._lock:
            with self._connection() as conn:
                row = conn.execute("SELECT * FROM zones WHERE id = ?;", (zone_id,)).fetchone()
        return _zone_from_row(row) if row is not None else None

    async def add_zone(
        self,
        *,
        name: str,
        output_channel: str,
        input_channel: str = "",
        position: str = "",
        **attrs: Any,
    ) -> Zone:
        if not name or not name.strip():
            raise ValidationError("Zone name is required")
        if not output_channel or not output_channel.strip():
            raise ValidationError("Zone output channel is required")
        columns = {
            "name": name.strip(),
            "output_channel": output_channel.strip(),
            "input_channel": (input_channel or "").strip(),
            "position": position or "",
        }
        columns.update(self._zone_columns(attrs))
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        async with self._lock:
            with self._connection() as conn:
                cursor = conn.execute(f"INSERT INTO zones ({names}) VALUES ({placeholders});", tuple(columns.values()))
                row = conn.execute("SELECT * FROM zones WHERE id = ?;", (cursor.lastrowid,)).fetchone()
        return _zone_from_row(row)

    async def update_zone(self, zone_id: int, **fields: Any) -> Zone:
        columns = self._zone_columns(fields)
        if not columns:
            raise ValidationError("No fields to update")
        assignments = ", ".join(f"{column} = ?" for column in columns)
        async with self._lock:
            with self._connection() as conn:
                cursor = conn.execute(
                    f"UPDATE zones SET {assignments} WHERE id = ?;",
                    (*columns.values(), zone_id),
                )
                if cursor.rowcount == 0:
                    raise ZoneNotFoundError(zone_id)
                row = conn.execute("SELECT * FROM zones WHERE id = ?;", (zone_id,)).fetchone()
        return _zone_from_row(row)

    async def delete_zone(self, zone_id: int) -> None:
        async with self._lock:
            with self._connection() as conn:
                cursor = conn.execute("DELETE FROM zones WHERE id = ?;", (zone_id,))
                if cursor.rowcount == 0:
                    raise ZoneNotFoundError(zone_id)

    async def find_active_zone(self, *, exclude_id: int | None = None) -> Optional[Zone]:
        async with self._lock:
            with self._connection() as conn:
                row = conn.execute(
                    "SELECT * FROM zones WHERE is_active = 1 AND id != ? ORDER BY id ASC LIMIT 1;",
                    (exclude_id if exclude_id is not None else -1,),
                ).fetchone()
        return _zone_from_row(row) if row is not None else None

    async def list_active_zones(self) -> list[Zone]:
        async with self._lock:
            with self._connection() as conn:
                rows = conn.execute("SELECT * FROM zones WHERE is_active = 1 ORDER BY id ASC;").fetchall()
        return [_zone_from_row(row) for row in rows]

    async def set_zone_active(self, zone_id: int, active: bool, *, last_watered: datetime | None = None) -> Zone:
        async with self._lock:
            with self._connection() as conn:
                if active:
                    cursor = conn.execute("UPDATE zones SET is_active = 1 WHERE id = ?;", (zone_id,))
                else:
                    stamp = last_watered.isoformat(timespec="seconds") if last_watered is not None else None
                    cursor = conn.execute(
                        "UPDATE zones SET is_active = 0, last_watered = COALESCE(?, last_watered) WHERE id = ?;",
                        (stamp, zone_id),
                    )
                if cursor.rowcount == 0:
                    raise ZoneNotFoundError(zone_id)
                row = conn.execute("SELECT * FROM zones WHERE id = ?;", (zone_id,)).fetchone()
        return _zone_from_row(row)

    async def update_moisture_by_input(self, input_channel: str, moisture: int) -> list[Zone]:
        async with self._lock:
            with self._connection() as conn:
                cursor = conn.execute(
                    "UPDATE zones SET moisture = ? WHERE input_channel = ?;",
                    (moisture, input_channel),
                )
                if cursor.rowcount == 0:
                    return []
                rows = conn.execute(
                    "SELECT * FROM zones WHERE input_channel = ? ORDER BY id ASC;",
                    (input_channel,),
                ).fetchall()
        return [_zone_from_row(row) for row in rows]

    @staticmethod
    def _zone_columns(fields: Mapping[str, Any]) -> dict[str, Any]:
        columns: dict[str, Any] = {}
        for key, value in fields.items():
            if value is None:
                continue
            if key not in ZONE_UPDATABLE_FIELDS:
                raise ValidationError(f"Unknown zone field {key!r}")
            columns[key] = (1 if value else 0) if key in BOOLEAN_COLUMNS else value
        return columns

    # Sequences

    async def list_sequences(self) -> list[Sequence]:
        async with self._lock:
            with self._connection() as conn:
                rows = conn.execute("SELECT * FROM sequences ORDER BY created_at DESC, id DESC;").fetchall()
        return [_sequence_from_row(row) for row in rows]

    async def get_sequence(self, sequence_id: int) -> Optional[Sequence]:
        async with self._lock:
            with self._connection() as conn:
                row = conn.execute("SELECT * FROM sequences WHERE id = ?;", (sequence_id,)).fetchone()
        return _sequence_from_row(row) if row is not None else None

    async def create_sequence(self, name: str, steps: Iterable[SequenceStep]) -> Sequence:
        step_list = list(steps)
        if not name or not name.strip():
            raise ValidationError("Sequence name is required")
        if not step_list:
            raise ValidationError("A sequence needs at least one step")
        payload = json.dumps([step.to_payload() for step in step_list], separators=(",", ":"))
        async with self._lock:
            with self._connection() as conn:
                cursor = conn.execute("INSERT INTO sequences (name, zones) VALUES (?, ?);", (name.strip(), payload))
                row = conn.execute("SELECT * FROM sequences WHERE id = ?;", (cursor.lastrowid,)).fetchone()
        return _sequence_from_row(row)

    async def delete_sequence(self, sequence_id: int) -> None:
        async with self._lock:
            with self._connection() as conn:
                cursor = conn.execute("DELETE FROM sequences WHERE id = ?;", (sequence_id,))
                if cursor.rowcount == 0:
                    raise SequenceNotFoundError(sequence_id)

    # Schedules

    async def list_schedules(self, *, enabled_only: bool = False) -> list[Schedule]:
        query = "SELECT * FROM schedules"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY time ASC, id ASC;"
        async with self._lock:
            with self._connection() as conn:
                rows = conn.execute(query).fetchall()
        return [_schedule_from_row(row) for row in rows]

    async def get_schedule(self, schedule_id: int) -> Optional[Schedule]:
        async with self._lock:
            with self._connection() as conn:
                row = conn.execute("SELECT * FROM schedules WHERE id = ?;", (schedule_id,)).fetchone()
        return _schedule_from_row(row) if row is not None else None

    async def create_schedule(
        self,
        *,
        sequence_id: int,
        days: Iterable[Any],
        time: str,
        name: str = "",
        enabled: bool = True,
    ) -> Schedule:
        normalized_days = normalize_days(days)
        normalized_time = normalize_time(time)
        async with self._lock:
            with self._connection() as conn:
                cursor = conn.execute(
                    "INSERT INTO schedules (name, sequence_id, days, time, enabled) VALUES (?, ?, ?, ?, ?);",
                    (name or "", sequence_id, json.dumps(list(normalized_days)), normalized_time, 1 if enabled else 0),
                )
                row = conn.execute("SELECT * FROM schedules WHERE id = ?;", (cursor.lastrowid,)).fetchone()
        return _schedule_from_row(row)

    async def update_schedule(self, schedule_id: int, **fields: Any) -> Schedule:
        columns: dict[str, Any] = {}
        for key, value in fields.items():
            if value is None:
                continue
            if key not in SCHEDULE_UPDATABLE_FIELDS:
                raise ValidationError(f"Unknown schedule field {key!r}")
            if key == "days":
                value = json.dumps(list(normalize_days(value)))
            elif key == "time":
                value = normalize_time(value)
            elif key == "enabled":
                value = 1 if value else 0
            columns[key] = value
        if not columns:
            raise ValidationError("No fields to update")
        assignments = ", ".join(f"{column} = ?" for column in columns)
        async with self._lock:
            with self._connection() as conn:
                cursor = conn.execute(
                    f"UPDATE schedules SET {assignments} WHERE id = ?;",
                    (*columns.values(), schedule_id),
                )
                if cursor.rowcount == 0:
                    raise ScheduleNotFoundError(schedule_id)
                row = conn.execute("SELECT * FROM schedules WHERE id = ?;", (schedule_id,)).fetchone()
        return _schedule_from_row(row)

    async def delete_schedule(self, schedule_id: int) -> None:
        async with self._lock:
            with self._connection() as conn:
                cursor = conn.execute("DELETE FROM schedules WHERE id = ?;", (schedule_id,))
                if cursor.rowcount == 0:
                    raise ScheduleNotFoundError(schedule_id)

    # Weather log

    async def append_weather_log(self, snapshot: WeatherSnapshot) -> None:
        async with self._lock:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO weather_log (temperature, humidity, rain_probability, wind_speed, description, provider)
                    VALUES (?, ?, ?, ?, ?, ?);
                    """,
                    (
                        snapshot.temperature,
                        snapshot.humidity,
                        snapshot.rain_probability_today,
                        snapshot.wind_speed,
                        snapshot.description,
                        snapshot.provider,
                    ),
                )

    async def list_weather_log(self, *, limit: int = 100) -> list[dict[str, Any]]:
        async with self._lock:
            with self._connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM weather_log ORDER BY id DESC LIMIT ?;",
                    (max(1, limit),),
                ).fetchall()
        return [
            {
                "id": row["id"],
                "temperature": row["temperature"],
                "humidity": row["humidity"],
                "rainProbability": row["rain_probability"],
                "windSpeed": row["wind_speed"],
                "description": row["description"],
                "provider": row["provider"],
                "timestamp": row["timestamp"],
            }
            for row in rows
        ]

    # Key-value settings

    async def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        async with self._lock:
            with self._connection() as conn:
                row = conn.execute("SELECT value FROM settings WHERE key = ?;", (key,)).fetchone()
        if row is None or row["value"] is None:
            return default
        return row["value"]

    async def set_settings(self, values: Mapping[str, Optional[str]]) -> None:
        async with self._lock:
            with self._connection() as conn:
                conn.executemany(
                    "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?);",
                    list(values.items()),
                )

    async def get_daily_check(self) -> tuple[bool, str]:
        enabled = await self.get_setting(DAILY_CHECK_ENABLED_KEY, "0")
        check_time = await self.get_setting(DAILY_CHECK_TIME_KEY, "04:00")
        return enabled == "1", check_time or "04:00"

    async def set_daily_check(self, *, enabled: bool, time: str) -> tuple[bool, str]:
        normalized = normalize_time(time)
        await self.set_settings({DAILY_CHECK_ENABLED_KEY: "1" if enabled else "0", DAILY_CHECK_TIME_KEY: normalized})
        return enabled, normalized

    async def get_winter_mode(self) -> WinterMode:
        enabled = await self.get_setting(WINTER_MODE_ENABLED_KEY, "0")
        activated_at = await self.get_setting(WINTER_MODE_ACTIVATED_KEY)
        return WinterMode(enabled=enabled == "1", activated_at=activated_at)

    async def set_winter_mode(self, enabled: bool, *, now: datetime | None = None) -> WinterMode:
        activated_at = None
        if enabled:
            activated_at = (now or datetime.now().astimezone()).isoformat(timespec="seconds")
        await self.set_settings(
            {
                WINTER_MODE_ENABLED_KEY: "1" if enabled else "0",
                WINTER_MODE_ACTIVATED_KEY: activated_at,
            }
        )
        return WinterMode(enabled=enabled, activated_at=activated_at)


irrigation_store = IrrigationStore(db_path=settings.irrigation_db)

__all__ = [
    "DAILY_CHECK_ENABLED_KEY",
    "DAILY_CHECK_TIME_KEY",
    "IrrigationStore",
    "irrigation_store",
]
