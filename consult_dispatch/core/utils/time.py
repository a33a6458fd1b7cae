from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

Sleeper = Callable[[float], Awaitable[None]]


def utcnow() -> datetime:
    # Timestamps are stored as "UTC-naive" datetimes (tzinfo stripped) for simplicity with
    # SQLite + SQLAlchemy. Treat any tz-naive timestamp emitted by the app as UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.isoformat() + "Z"
    return value.isoformat().replace("+00:00", "Z")


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


async def sleep_seconds(seconds: float) -> None:
    if seconds <= 0:
        return
    await asyncio.sleep(seconds)
