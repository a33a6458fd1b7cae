from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from consult_dispatch.core.utils.payload import normalize_error_message, to_nullable_str, truncate
from consult_dispatch.core.workflow import ResultEntry, Subject
from consult_dispatch.db.models import Job, JobStatus
from consult_dispatch.modules.jobs.repository import SHAPE_COLUMNS, JobsRepository
from consult_dispatch.modules.providers.profiles import DuplicatePolicy, ProviderProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PersistOutcome:
    status: JobStatus
    duplicates_created: int


def subject_values(subject: Subject) -> dict[str, Any]:
    return {
        "name": subject.name or None,
        "document": subject.document or None,
        "phone": subject.phone or None,
        "birth_date": subject.birth_date,
        "email": subject.email,
        "gender": subject.gender,
    }


def entry_values(entry: ResultEntry) -> dict[str, Any]:
    return {
        "result_status": to_nullable_str(entry.status, 100),
        "result_description": entry.description,
        "result_value": entry.value,
        "result_table": entry.table,
        "result_term": entry.term,
        "result_payload": dict(entry.payload) or None,
    }


class ResultPersister:
    """Writes workflow outcomes back to the job rows.

    Entry 0 updates the job in place; every further entry becomes another row carrying the same
    subject and tags. Only the originating row is ever re-queued: further rows take the settled
    status and are refreshed whenever the originating job is polled again. One job's writes are
    committed together.
    """

    def __init__(self, profile: ProviderProfile, *, message_max_length: int) -> None:
        self._profile = profile
        self._message_max_length = message_max_length

    def status_for(self, entry: ResultEntry) -> JobStatus:
        if self._profile.requeue_on_pending and entry.status in self._profile.pending_statuses:
            return JobStatus.PENDING
        return self._profile.success_status

    def error_message(self, message: str) -> str:
        normalized = normalize_error_message(message) or "Unknown error"
        return truncate(normalized, self._message_max_length)

    async def persist_success(
        self,
        repository: JobsRepository,
        job: Job,
        subject: Subject,
        entries: Sequence[ResultEntry],
        *,
        now: datetime | None = None,
    ) -> PersistOutcome:
        if not entries:
            raise ValueError("persist_success requires at least one entry")

        primary, extras = entries[0], entries[1:]
        base = {column: getattr(job, column) for column in SHAPE_COLUMNS}
        base.update(subject_values(subject))

        status = self.status_for(primary)
        duplicates = 0
        try:
            await repository.update_result(
                job.id,
                {**subject_values(subject), **entry_values(primary), "status": status, "message": None},
                commit=False,
                now=now,
            )
            for entry in extras:
                values = {**base, **entry_values(entry), "status": self._profile.success_status, "message": None}
                if self._profile.duplicates == DuplicatePolicy.MERGE_NEAR_DUPLICATE:
                    existing = await repository.find_near_duplicate(
                        exclude_id=job.id,
                        provider=job.provider,
                        document=values["document"],
                        user_id=job.user_id,
                        team_id=job.team_id,
                        forced_account_id=job.forced_account_id,
                        result_table=values["result_table"],
                        result_term=values["result_term"],
                        result_value=values["result_value"],
                    )
                    if existing is not None:
                        await repository.update_result(existing.id, values, commit=False, now=now)
                        duplicates += 1
                        continue
                await repository.insert_duplicate(values, commit=False, now=now)
                duplicates += 1
            await repository.commit()
        except BaseException:
            await repository.rollback()
            raise

        if status == JobStatus.PENDING:
            logger.info("Job re-queued with pending result job_id=%s result_status=%s", job.id, primary.status)
        return PersistOutcome(status=status, duplicates_created=duplicates)

    async def persist_error(
        self,
        repository: JobsRepository,
        job_id: int,
        message: str,
        *,
        now: datetime | None = None,
    ) -> str:
        stored = self.error_message(message)
        await repository.mark_error(job_id, stored, now=now)
        return stored
