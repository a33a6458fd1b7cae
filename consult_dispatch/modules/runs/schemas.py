from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import Field

from consult_dispatch.modules.shared.schemas import ReportModel


class AccountRunSummary(ReportModel):
    id: int
    label: str
    remaining_at_start: int
    allocated: int = 0
    processed: int = 0
    errored: int = 0
    duplicates_created: int = 0
    lock_busy: bool = False
    auth_error: str | None = None


class RunSummary(ReportModel):
    ok: bool = True
    message: str | None = None
    provider: str
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: int = 0
    total_accounts: int = 0
    accounts_with_capacity: int = 0
    accounts_locked: int = 0
    jobs_found: int = 0
    jobs_allocated: int = 0
    jobs_processed: int = 0
    jobs_errored: int = 0
    duplicates_created: int = 0
    stale_reclaimed: int = 0
    accounts: List[AccountRunSummary] = Field(default_factory=list)


class RunBusyResponse(ReportModel):
    ok: bool = False
    message: str
    provider: str
