from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum

from consult_dispatch.core.config.settings import Settings
from consult_dispatch.core.quota import QuotaPolicy
from consult_dispatch.core.workflow import PollingPolicy
from consult_dispatch.db.models import JobStatus


class AllocationStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    PINNED_ROUND_ROBIN = "pinned_round_robin"


class ClaimStrategy(str, Enum):
    PREALLOCATED = "preallocated"
    ATOMIC_PER_ACCOUNT = "atomic_per_account"


class IncrementPolicy(str, Enum):
    # Every job the account actually attempted, success or error.
    ALWAYS = "always"
    # Only when the upstream accepted the submission, whatever happened afterwards.
    ON_ACCEPT = "on_accept"
    # Only when the workflow produced usable entries.
    ON_SUCCESS = "on_success"


class DuplicatePolicy(str, Enum):
    COPY_ROW = "copy_row"
    MERGE_NEAR_DUPLICATE = "merge_near_duplicate"


@dataclass(frozen=True, slots=True)
class ProviderProfile:
    name: str
    reset_window: timedelta
    allocation: AllocationStrategy
    claim: ClaimStrategy
    increment: IncrementPolicy
    duplicates: DuplicatePolicy
    success_status: JobStatus
    default_daily_limit: int = 0
    tenant_restricted: bool = False
    claim_unpinned: bool = True
    account_lock: bool = False
    clamp_increment: bool = False
    pending_statuses: frozenset[str] = frozenset()
    requeue_on_pending: bool = False
    poll_attempts: int = 5
    poll_delay_seconds: float = 3.0
    job_delay_seconds: float = 5.0
    step_delay_seconds: float = 0.0
    reuse_token: bool = True

    @property
    def honor_forced(self) -> bool:
        return self.allocation == AllocationStrategy.PINNED_ROUND_ROBIN

    def quota_policy(self) -> QuotaPolicy:
        return QuotaPolicy(
            reset_window=self.reset_window,
            default_daily_limit=self.default_daily_limit,
            clamp_increment=self.clamp_increment,
        )

    def polling_policy(self) -> PollingPolicy:
        return PollingPolicy(
            max_attempts=self.poll_attempts,
            delay_seconds=self.poll_delay_seconds,
            pending_statuses=self.pending_statuses,
        )

    def with_settings(self, settings: Settings) -> ProviderProfile:
        overrides: dict[str, float] = {}
        if self.name in settings.poll_delay_seconds:
            overrides["poll_delay_seconds"] = settings.poll_delay_seconds[self.name]
        if self.name in settings.job_delay_seconds:
            overrides["job_delay_seconds"] = settings.job_delay_seconds[self.name]
        if not overrides:
            return self
        return replace(self, **overrides)


V8_PENDING_STATUSES = frozenset(
    {
        "WAITING_CONSENT",
        "WAITING_CONSULT",
        "WAITING_CREDIT_ANALYSIS",
        "CONSENT_APPROVED",
    }
)

V8_PROFILE = ProviderProfile(
    name="v8",
    reset_window=timedelta(hours=1),
    allocation=AllocationStrategy.ROUND_ROBIN,
    claim=ClaimStrategy.PREALLOCATED,
    increment=IncrementPolicy.ON_ACCEPT,
    duplicates=DuplicatePolicy.MERGE_NEAR_DUPLICATE,
    success_status=JobStatus.CONSULTED,
    tenant_restricted=True,
    pending_statuses=V8_PENDING_STATUSES,
    requeue_on_pending=True,
    poll_delay_seconds=3.0,
    job_delay_seconds=5.0,
)

PRESENCA_PROFILE = ProviderProfile(
    name="presenca",
    reset_window=timedelta(hours=24),
    allocation=AllocationStrategy.PINNED_ROUND_ROBIN,
    claim=ClaimStrategy.ATOMIC_PER_ACCOUNT,
    increment=IncrementPolicy.ALWAYS,
    duplicates=DuplicatePolicy.MERGE_NEAR_DUPLICATE,
    success_status=JobStatus.COMPLETED,
    claim_unpinned=False,
    account_lock=True,
    clamp_increment=True,
    poll_delay_seconds=2.0,
    job_delay_seconds=5.0,
    step_delay_seconds=2.0,
    # Each job logs in again; sessions upstream are short-lived.
    reuse_token=False,
)

HANDMAIS_PROFILE = ProviderProfile(
    name="handmais",
    reset_window=timedelta(hours=24),
    allocation=AllocationStrategy.PINNED_ROUND_ROBIN,
    claim=ClaimStrategy.PREALLOCATED,
    increment=IncrementPolicy.ON_SUCCESS,
    duplicates=DuplicatePolicy.COPY_ROW,
    success_status=JobStatus.CONSULTED,
    default_daily_limit=500,
    poll_delay_seconds=2.0,
    job_delay_seconds=2.0,
    step_delay_seconds=2.0,
)

BUILTIN_PROFILES: dict[str, ProviderProfile] = {
    profile.name: profile for profile in (V8_PROFILE, PRESENCA_PROFILE, HANDMAIS_PROFILE)
}
