from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta

from consult_dispatch.core.utils.time import Clock, SystemClock
from consult_dispatch.db.models import JobStatus
from consult_dispatch.modules.jobs.repository import JobsRepository

logger = logging.getLogger(__name__)

STALE_MESSAGE = "Reclaimed after being stuck in processing"


class JobsService:
    def __init__(self, repository: JobsRepository, *, clock: Clock | None = None) -> None:
        self._repository = repository
        self._clock = clock or SystemClock()

    async def release_held(
        self,
        provider: str,
        *,
        ids: Sequence[int] | None = None,
        batch_label: str | None = None,
        user_id: int | None = None,
        team_id: int | None = None,
    ) -> int:
        if not ids and not batch_label:
            raise ValueError("Provide ids or a batch label to release held jobs")
        released = await self._repository.release_held(
            provider,
            ids=ids,
            batch_label=batch_label,
            user_id=user_id,
            team_id=team_id,
        )
        logger.info("Held jobs released provider=%s count=%s batch_label=%s", provider, released, batch_label)
        return released

    async def reclaim_stale(self, provider: str, *, minutes: int) -> int:
        if minutes <= 0:
            raise ValueError("minutes must be > 0")
        older_than = self._clock.now() - timedelta(minutes=minutes)
        reclaimed = await self._repository.reclaim_stale(provider, older_than=older_than, message=STALE_MESSAGE)
        logger.info("Stale jobs reclaimed provider=%s count=%s minutes=%s", provider, reclaimed, minutes)
        return reclaimed

    async def status_counts(self, provider: str) -> dict[str, int]:
        counts = await self._repository.count_by_status(provider)
        return {status.value: counts.get(status, 0) for status in JobStatus}
