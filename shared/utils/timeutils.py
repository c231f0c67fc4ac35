"""Helpers de tiempo en UTC"""
from datetime import datetime, timezone
from typing import Optional
import time


def utcnow() -> datetime:
    """Datetime actual en UTC (aware)"""
    return datetime.now(timezone.utc)


def unix_now() -> int:
    return int(time.time())


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalizar a UTC aware.

    SQLite devuelve datetimes naive aunque la columna sea timezone=True;
    se asume que fueron guardados en UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None
