from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from consult_dispatch.core.utils.time import utcnow
from consult_dispatch.db.models import Job, JobStatus

# Columns copied from a job onto the extra rows its result entries fan out to.
SHAPE_COLUMNS: tuple[str, ...] = (
    "provider",
    "name",
    "document",
    "phone",
    "birth_date",
    "email",
    "gender",
    "forced_account_id",
    "user_id",
    "team_id",
    "role_id",
    "batch_label",
)


def _same(column: Any, value: object) -> ColumnElement[bool]:
    if value is None:
        return column.is_(None)
    return column == value


class JobsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, job_id: int) -> Job | None:
        return await self._session.get(Job, job_id, populate_existing=True)

    async def add(self, job: Job) -> Job:
        self._session.add(job)
        await self._session.commit()
        await self._session.refresh(job)
        return job

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()

    async def list_pending(self, provider: str, *, limit: int | None = None) -> list[Job]:
        stmt = (
            select(Job)
            .where(Job.provider == provider, Job.status == JobStatus.PENDING)
            .order_by(Job.id)
            .execution_options(populate_existing=True)
        )
        if limit is not None:
            stmt = stmt.limit(max(0, limit))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def claim_pending(
        self,
        provider: str,
        *,
        limit: int,
        account_id: int | None = None,
        unpinned_only: bool = False,
        now: datetime | None = None,
    ) -> list[Job]:
        """Move up to `limit` oldest pending jobs to processing and return them.

        Selection and transition happen in one UPDATE, so concurrent claimers never receive the
        same job: on row-locking databases the inner SELECT skips rows another claimer holds, and
        on SQLite writers are serialized and the outer status guard drops rows already taken.
        With `account_id` only jobs pinned to that account are claimed.
        """
        if limit <= 0:
            return []
        candidates = select(Job.id).where(Job.provider == provider, Job.status == JobStatus.PENDING)
        if account_id is not None:
            candidates = candidates.where(Job.forced_account_id == account_id)
        elif unpinned_only:
            candidates = candidates.where(Job.forced_account_id.is_(None))
        candidates = candidates.order_by(Job.id).limit(limit).with_for_update(skip_locked=True)

        result = await self._session.execute(
            update(Job)
            .where(Job.id.in_(candidates), Job.status == JobStatus.PENDING)
            .values(status=JobStatus.PROCESSING, updated_at=now or utcnow())
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        claimed_ids = sorted(result.scalars().all())
        await self._session.commit()
        if not claimed_ids:
            return []

        reloaded = await self._session.execute(
            select(Job).where(Job.id.in_(claimed_ids)).order_by(Job.id).execution_options(populate_existing=True)
        )
        return list(reloaded.scalars().all())

    async def mark_processing(self, job_id: int, *, now: datetime | None = None) -> bool:
        result = await self._session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PENDING)
            .values(status=JobStatus.PROCESSING, updated_at=now or utcnow())
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def update_result(
        self,
        job_id: int,
        values: Mapping[str, Any],
        *,
        commit: bool = True,
        now: datetime | None = None,
    ) -> bool:
        result = await self._session.execute(
            update(Job)
            .where(Job.id == job_id)
            .values({**values, "updated_at": now or utcnow()})
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        if commit:
            await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def mark_error(
        self,
        job_id: int,
        message: str,
        *,
        zero_value: bool = False,
        now: datetime | None = None,
    ) -> bool:
        values: dict[str, Any] = {"status": JobStatus.ERROR, "message": message}
        if zero_value:
            values["result_value"] = 0.0
        return await self.update_result(job_id, values, now=now)

    async def insert_duplicate(
        self,
        values: Mapping[str, Any],
        *,
        commit: bool = True,
        now: datetime | None = None,
    ) -> int:
        job = Job(**{**values, "updated_at": now or utcnow()})
        self._session.add(job)
        await self._session.flush()
        if commit:
            await self._session.commit()
        return job.id

    async def find_near_duplicate(
        self,
        *,
        exclude_id: int,
        provider: str,
        document: str | None,
        user_id: int | None,
        team_id: int | None,
        forced_account_id: int | None,
        result_table: str | None,
        result_term: str | None,
        result_value: float | None,
    ) -> Job | None:
        stmt = (
            select(Job)
            .where(
                Job.id != exclude_id,
                Job.provider == provider,
                _same(Job.document, document),
                _same(Job.user_id, user_id),
                _same(Job.team_id, team_id),
                _same(Job.forced_account_id, forced_account_id),
                _same(Job.result_table, result_table),
                _same(Job.result_term, result_term),
                _same(Job.result_value, result_value),
            )
            .order_by(Job.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def release_held(
        self,
        provider: str,
        *,
        ids: Sequence[int] | None = None,
        batch_label: str | None = None,
        user_id: int | None = None,
        team_id: int | None = None,
    ) -> int:
        conditions: list[ColumnElement[bool]] = [Job.provider == provider, Job.status == JobStatus.HELD]
        if ids:
            conditions.append(Job.id.in_(list(ids)))
        if batch_label:
            conditions.append(Job.batch_label == batch_label)
        if user_id is not None:
            conditions.append(Job.user_id == user_id)
        if team_id is not None:
            conditions.append(Job.team_id == team_id)

        result = await self._session.execute(
            update(Job)
            .where(*conditions)
            .values(status=JobStatus.PENDING, updated_at=utcnow())
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return len(result.scalars().all())

    async def reclaim_stale(self, provider: str, *, older_than: datetime, message: str) -> int:
        result = await self._session.execute(
            update(Job)
            .where(
                Job.provider == provider,
                Job.status == JobStatus.PROCESSING,
                Job.updated_at < older_than,
            )
            .values(status=JobStatus.PENDING, message=message, updated_at=utcnow())
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return len(result.scalars().all())

    async def count_by_status(self, provider: str) -> dict[JobStatus, int]:
        result = await self._session.execute(
            select(Job.status, func.count(Job.id)).where(Job.provider == provider).group_by(Job.status)
        )
        return {status: int(count) for status, count in result.all()}
