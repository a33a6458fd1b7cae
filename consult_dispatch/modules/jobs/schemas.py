from __future__ import annotations

from typing import Dict, List

from pydantic import Field

from consult_dispatch.modules.shared.schemas import DashboardModel


class ReleaseHeldRequest(DashboardModel):
    ids: List[int] = Field(default_factory=list)
    batch_label: str | None = None
    user_id: int | None = None
    team_id: int | None = None


class ReleaseHeldResponse(DashboardModel):
    provider: str
    released: int


class ReclaimStaleRequest(DashboardModel):
    minutes: int = Field(gt=0)


class ReclaimStaleResponse(DashboardModel):
    provider: str
    reclaimed: int


class JobStatusCountsResponse(DashboardModel):
    provider: str
    counts: Dict[str, int] = Field(default_factory=dict)
