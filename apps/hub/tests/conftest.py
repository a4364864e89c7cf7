import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict

ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# The module-level store opens its database on import.
os.environ.setdefault("IRRIGATION_DB", str(Path(tempfile.mkdtemp(prefix="irrigation-tests-")) / "hub.sqlite"))

import pytest
from fastapi.testclient import TestClient

from config import settings
from main import create_app
from services.event_bus import EventBus
from services.relay import RelayError
from services.storage import IrrigationStore, irrigation_store
from services.timers import TimerRegistry
from services.weather import weather_service
from services.zones import ZoneActuator


class RecordingRelay:
    """Relay stand-in that records every command and can be told to fail."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, bool]] = []

    async def set_output(self, channel: str, on: bool) -> bool:
        self.calls.append((channel, on))
        if self.fail:
            raise RelayError("Miniserver not reachable")
        return True

    async def close(self) -> None:
        return None


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_hub_state() -> None:
    asyncio.run(irrigation_store.clear())
    weather_service.invalidate()
    yield
    asyncio.run(irrigation_store.clear())
    weather_service.invalidate()


@pytest.fixture
def settings_override() -> Callable[..., None]:
    original: Dict[str, Any] = {}

    def _apply(**overrides: Any) -> None:
        for key, value in overrides.items():
            if key not in original:
                original[key] = getattr(settings, key)
            setattr(settings, key, value)

    yield _apply

    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture
def store(tmp_path: Path) -> IrrigationStore:
    return IrrigationStore(db_path=tmp_path / "irrigation.sqlite")


@pytest.fixture
def relay() -> RecordingRelay:
    return RecordingRelay()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def fast_timers() -> TimerRegistry:
    # One "minute" lasts 10 ms.
    return TimerRegistry(seconds_per_minute=0.01)


@pytest.fixture
def actuator(store: IrrigationStore, relay: RecordingRelay, bus: EventBus, fast_timers: TimerRegistry) -> ZoneActuator:
    return ZoneActuator(store=store, relay=relay, bus=bus, timers=fast_timers)


@pytest.fixture
def offline(settings_override: Callable[..., None]) -> None:
    settings_override(
        mqtt_enabled=False,
        weather_enabled=False,
        scheduler_enabled=False,
        loxone_host=None,
        loxone_username=None,
        loxone_password=None,
    )
    yield


@pytest.fixture
def client(offline: None) -> TestClient:
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
