from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import Field

from consult_dispatch.modules.shared.schemas import DashboardModel


class AccountQuotaStatus(DashboardModel):
    account_id: int
    label: str
    daily_limit: int
    consumed: int
    remaining: int
    last_reset_at: datetime | None = None
    next_reset_at: datetime | None = None
    reset_due: bool = False
    has_credential: bool = False


class AccountsStatusResponse(DashboardModel):
    provider: str
    total_remaining: int = 0
    accounts: List[AccountQuotaStatus] = Field(default_factory=list)
