from __future__ import annotations

from datetime import datetime, tzinfo
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import settings


@lru_cache(maxsize=8)
def _zone(name: str) -> Optional[tzinfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def local_tz() -> Optional[tzinfo]:
    """Configured schedule timezone, or None for the host's local zone."""
    if not settings.timezone:
        return None
    return _zone(settings.timezone)


def local_now() -> datetime:
    tz = local_tz()
    if tz is None:
        return datetime.now().astimezone()
    return datetime.now(tz)


__all__ = ["local_now", "local_tz"]
