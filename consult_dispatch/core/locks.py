from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from uuid import uuid4

import anyio
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from consult_dispatch.core.errors import LockBusyError
from consult_dispatch.core.utils.time import Clock, SystemClock
from consult_dispatch.db.models import RunLock
from consult_dispatch.db.session import SessionFactory

logger = logging.getLogger(__name__)


def run_lock_key(provider: str) -> str:
    return f"consult-{provider}-run"


def account_lock_key(provider: str, account_id: int) -> str:
    return f"consult-{provider}-run-account:{account_id}"


class AdvisoryLock:
    """Store-backed mutual exclusion with a TTL.

    A row in `run_locks` marks the key as held. Expired rows are taken over on acquire, so a
    crashed holder blocks the key for at most `ttl_seconds`.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        key: str,
        *,
        ttl_seconds: float,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.key = key
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._owner: str | None = None

    @property
    def held(self) -> bool:
        return self._owner is not None

    async def acquire(self) -> bool:
        if self._owner is not None:
            return True
        owner = uuid4().hex
        now = self._clock.now()
        async with self._session_factory() as session:
            await session.execute(delete(RunLock).where(RunLock.key == self.key, RunLock.expires_at <= now))
            session.add(RunLock(key=self.key, owner=owner, acquired_at=now, expires_at=now + self._ttl))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        self._owner = owner
        return True

    async def release(self) -> None:
        owner = self._owner
        if owner is None:
            return
        self._owner = None
        with anyio.CancelScope(shield=True):
            async with self._session_factory() as session:
                await session.execute(delete(RunLock).where(RunLock.key == self.key, RunLock.owner == owner))
                await session.commit()


@asynccontextmanager
async def hold_lock(
    session_factory: SessionFactory,
    key: str,
    *,
    ttl_seconds: float,
    clock: Clock | None = None,
) -> AsyncIterator[AdvisoryLock]:
    lock = AdvisoryLock(session_factory, key, ttl_seconds=ttl_seconds, clock=clock)
    if not await lock.acquire():
        raise LockBusyError(key)
    logger.info("Lock acquired key=%s", key)
    try:
        yield lock
    finally:
        try:
            await lock.release()
        except Exception:
            logger.exception("Failed to release lock key=%s", key)
        else:
            logger.info("Lock released key=%s", key)
