from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from datetime import timedelta

from consult_dispatch.core.balancer import TenantPolicy, allocate
from consult_dispatch.core.config.settings import Settings
from consult_dispatch.core.errors import LockBusyError, WorkflowError
from consult_dispatch.core.locks import account_lock_key, hold_lock, run_lock_key
from consult_dispatch.core.metrics.metrics import Metrics
from consult_dispatch.core.quota import AccountSlot, LedgerSnapshot, QuotaLedger
from consult_dispatch.core.utils.time import Clock, Sleeper, SystemClock, sleep_seconds
from consult_dispatch.core.workflow import (
    ApprovalChain,
    ProviderAdapter,
    ProviderApprover,
    ServiceApprover,
    Subject,
    WorkflowContext,
    WorkflowRunner,
)
from consult_dispatch.db.models import Job
from consult_dispatch.db.session import SessionFactory
from consult_dispatch.modules.accounts.repository import AccountsRepository
from consult_dispatch.modules.jobs.repository import JobsRepository
from consult_dispatch.modules.jobs.service import STALE_MESSAGE
from consult_dispatch.modules.providers.profiles import ClaimStrategy, IncrementPolicy, ProviderProfile
from consult_dispatch.modules.providers.registry import ProviderRegistry
from consult_dispatch.modules.runs.persister import ResultPersister
from consult_dispatch.modules.runs.schemas import AccountRunSummary, RunSummary

logger = logging.getLogger(__name__)


def should_increment(policy: IncrementPolicy, context: WorkflowContext) -> bool:
    match policy:
        case IncrementPolicy.ALWAYS:
            return True
        case IncrementPolicy.ON_ACCEPT:
            return context.submission_accepted
        case IncrementPolicy.ON_SUCCESS:
            return context.succeeded
    return False


def build_approval_chain(adapter: ProviderAdapter, settings: Settings, *, sleep: Sleeper) -> ApprovalChain:
    approvers = [ProviderApprover(adapter)]
    approvers.extend(
        ServiceApprover(
            url,
            timeout_seconds=settings.approval_service_timeout_seconds,
            approval_timeout_seconds=settings.approval_timeout_seconds,
        )
        for url in settings.approval_service_urls
    )
    return ApprovalChain(approvers, max_attempts=settings.approval_max_attempts, sleep=sleep)


class RunOrchestrator:
    """One dispatch run for one provider.

    Holds the provider's run lock for the whole run, loads accounts through the quota ledger,
    allocates or claims pending jobs, drives each job's workflow and records the outcome.
    Workflow failures end up on the job row; anything else (store failures included) ends the run
    with `ok=False` after the lock is released.
    """

    def __init__(
        self,
        *,
        profile: ProviderProfile,
        adapter: ProviderAdapter,
        session_factory: SessionFactory,
        settings: Settings,
        metrics: Metrics,
        tenant_policy: TenantPolicy | None = None,
        approvals: ApprovalChain | None = None,
        clock: Clock | None = None,
        sleep: Sleeper = sleep_seconds,
    ) -> None:
        self._profile = profile
        self._provider = profile.name
        self._session_factory = session_factory
        self._settings = settings
        self._metrics = metrics
        self._tenant_policy = tenant_policy if profile.tenant_restricted else None
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._persister = ResultPersister(profile, message_max_length=settings.message_max_length)
        self._runner = WorkflowRunner(
            adapter,
            polling=profile.polling_policy(),
            approvals=approvals or build_approval_chain(adapter, settings, sleep=sleep),
            step_delay_seconds=profile.step_delay_seconds,
            reuse_token=profile.reuse_token,
            sleep=sleep,
        )

    async def run(self) -> RunSummary:
        """Execute the run. Raises `LockBusyError` when another run of this provider holds the lock."""
        started_monotonic = time.monotonic()
        summary = RunSummary(provider=self._provider, started_at=self._clock.now())
        outcome = "ok"
        try:
            async with hold_lock(
                self._session_factory,
                run_lock_key(self._provider),
                ttl_seconds=self._settings.run_lock_ttl_seconds,
                clock=self._clock,
            ):
                await self._execute(summary)
        except LockBusyError:
            outcome = "busy"
            logger.warning("Run skipped, lock busy provider=%s", self._provider)
            raise
        except Exception as exc:
            outcome = "error"
            logger.exception("Run failed provider=%s", self._provider)
            summary.ok = False
            summary.message = str(exc) or type(exc).__name__
        finally:
            summary.finished_at = self._clock.now()
            summary.duration_ms = int(round((time.monotonic() - started_monotonic) * 1000))
            self._metrics.observe_run(
                provider=self._provider,
                outcome=outcome,
                duration_ms=summary.duration_ms if outcome != "busy" else None,
            )

        logger.info(
            "Run finished provider=%s ok=%s accounts=%s jobs_found=%s allocated=%s processed=%s errored=%s "
            "duplicates=%s duration_ms=%s",
            self._provider,
            summary.ok,
            summary.accounts_with_capacity,
            summary.jobs_found,
            summary.jobs_allocated,
            summary.jobs_processed,
            summary.jobs_errored,
            summary.duplicates_created,
            summary.duration_ms,
        )
        return summary

    async def _execute(self, summary: RunSummary) -> None:
        if self._settings.stale_processing_minutes > 0:
            summary.stale_reclaimed = await self._reclaim_stale(self._settings.stale_processing_minutes)

        snapshot = await self._load_accounts()
        summary.total_accounts = snapshot.total_accounts
        summary.accounts_with_capacity = len(snapshot.slots)
        self._metrics.refresh_account_remaining(
            provider=self._provider,
            remaining=[(slot.account_id, slot.remaining) for slot in snapshot.slots],
        )
        logger.info(
            "Accounts loaded provider=%s total=%s with_capacity=%s capacity=%s",
            self._provider,
            snapshot.total_accounts,
            len(snapshot.slots),
            snapshot.total_capacity,
        )
        if not snapshot.slots:
            summary.message = "No account with remaining capacity"
            return

        if self._profile.claim == ClaimStrategy.ATOMIC_PER_ACCOUNT:
            await self._run_atomic(snapshot, summary)
        else:
            await self._run_preallocated(snapshot, summary)

    async def _load_accounts(self) -> LedgerSnapshot:
        async with self._session_factory() as session:
            ledger = QuotaLedger(AccountsRepository(session), self._profile.quota_policy(), clock=self._clock)
            return await ledger.load_accounts(self._provider)

    async def _reclaim_stale(self, minutes: int) -> int:
        older_than = self._clock.now() - timedelta(minutes=minutes)
        async with self._session_factory() as session:
            reclaimed = await JobsRepository(session).reclaim_stale(
                self._provider,
                older_than=older_than,
                message=STALE_MESSAGE,
            )
        if reclaimed:
            logger.warning("Stale processing jobs reclaimed provider=%s count=%s", self._provider, reclaimed)
        return reclaimed

    async def _run_preallocated(self, snapshot: LedgerSnapshot, summary: RunSummary) -> None:
        async with self._session_factory() as session:
            jobs = await JobsRepository(session).list_pending(self._provider, limit=snapshot.total_capacity)
        summary.jobs_found = len(jobs)

        reports = {slot.account_id: self._account_report(slot) for slot in snapshot.slots}
        allocation = allocate(
            jobs,
            snapshot.slots,
            honor_forced=self._profile.honor_forced,
            tenant_policy=self._tenant_policy,
        )
        summary.jobs_allocated = allocation.allocated_count
        logger.info(
            "Jobs allocated provider=%s found=%s allocated=%s unallocated=%s",
            self._provider,
            len(jobs),
            allocation.allocated_count,
            len(allocation.unallocated),
        )

        for slot in snapshot.slots:
            report = reports[slot.account_id]
            account_jobs = allocation.jobs_for(slot.account_id)
            report.allocated = len(account_jobs)
            summary.accounts.append(report)
            if account_jobs:
                await self._process_account(slot, account_jobs, report, summary, claim_each=True)

    async def _run_atomic(self, snapshot: LedgerSnapshot, summary: RunSummary) -> None:
        reports = [self._account_report(slot) for slot in snapshot.slots]
        summary.accounts.extend(reports)
        results = await asyncio.gather(
            *(self._atomic_worker(slot, report, summary) for slot, report in zip(snapshot.slots, reports)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _atomic_worker(self, slot: AccountSlot, report: AccountRunSummary, summary: RunSummary) -> None:
        if not self._profile.account_lock:
            await self._claim_and_process(slot, report, summary)
            return
        try:
            async with hold_lock(
                self._session_factory,
                account_lock_key(self._provider, slot.account_id),
                ttl_seconds=self._settings.account_lock_ttl_seconds,
                clock=self._clock,
            ):
                await self._claim_and_process(slot, report, summary)
        except LockBusyError:
            report.lock_busy = True
            summary.accounts_locked += 1
            logger.info("Account busy in another run provider=%s account_id=%s", self._provider, slot.account_id)

    async def _claim_and_process(self, slot: AccountSlot, report: AccountRunSummary, summary: RunSummary) -> None:
        async with self._session_factory() as session:
            repository = JobsRepository(session)
            jobs = await repository.claim_pending(
                self._provider,
                limit=slot.remaining,
                account_id=slot.account_id,
                now=self._clock.now(),
            )
            if self._profile.claim_unpinned and len(jobs) < slot.remaining:
                jobs.extend(
                    await repository.claim_pending(
                        self._provider,
                        limit=slot.remaining - len(jobs),
                        unpinned_only=True,
                        now=self._clock.now(),
                    )
                )
        report.allocated = len(jobs)
        summary.jobs_found += len(jobs)
        summary.jobs_allocated += len(jobs)
        if jobs:
            logger.info("Jobs claimed provider=%s account_id=%s count=%s", self._provider, slot.account_id, len(jobs))
            await self._process_account(slot, jobs, report, summary, claim_each=False)

    async def _process_account(
        self,
        slot: AccountSlot,
        jobs: Sequence[Job],
        report: AccountRunSummary,
        summary: RunSummary,
        *,
        claim_each: bool,
    ) -> None:
        aborted: WorkflowError | None = None
        attempted = False
        async with self._session_factory() as session:
            jobs_repository = JobsRepository(session)
            ledger = QuotaLedger(AccountsRepository(session), self._profile.quota_policy(), clock=self._clock)

            for job in jobs:
                if aborted is not None:
                    await self._record_error(jobs_repository, job, str(aborted), report, summary, aborted.code)
                    continue

                if claim_each and not await jobs_repository.mark_processing(job.id, now=self._clock.now()):
                    logger.info("Job no longer pending, skipped provider=%s job_id=%s", self._provider, job.id)
                    continue

                # Upstream rate limits apply per account: space consecutive jobs out.
                if attempted:
                    await self._sleep(self._profile.job_delay_seconds)
                attempted = True

                subject = Subject.from_job(job)
                context = await self._runner.run(account_id=slot.account_id, subject=subject, credential=slot.credential)
                if context.succeeded:
                    try:
                        outcome = await self._persister.persist_success(
                            jobs_repository, job, subject, context.entries, now=self._clock.now()
                        )
                    except Exception:
                        await self._mark_error_best_effort(jobs_repository, job.id)
                        raise
                    report.processed += 1
                    report.duplicates_created += outcome.duplicates_created
                    summary.jobs_processed += 1
                    summary.duplicates_created += outcome.duplicates_created
                    self._metrics.observe_job(provider=self._provider, outcome="success")
                    self._metrics.inc_duplicates(provider=self._provider, count=outcome.duplicates_created)
                else:
                    error = context.error or WorkflowError("Workflow failed")
                    await self._record_error(jobs_repository, job, str(error), report, summary, error.code)
                    if context.account_level_failure:
                        aborted = error
                        report.auth_error = self._persister.error_message(str(error))[:300]
                        logger.warning(
                            "Account aborted after authentication failure provider=%s account_id=%s",
                            self._provider,
                            slot.account_id,
                        )

                if should_increment(self._profile.increment, context):
                    await ledger.increment(slot.account_id)

    async def _record_error(
        self,
        repository: JobsRepository,
        job: Job,
        message: str,
        report: AccountRunSummary,
        summary: RunSummary,
        code: str,
    ) -> None:
        await self._persister.persist_error(repository, job.id, message, now=self._clock.now())
        report.errored += 1
        summary.jobs_errored += 1
        self._metrics.observe_job(provider=self._provider, outcome="error", error_code=code)

    async def _mark_error_best_effort(self, repository: JobsRepository, job_id: int) -> None:
        try:
            await repository.rollback()
            await self._persister.persist_error(
                repository, job_id, "Failed to store workflow result", now=self._clock.now()
            )
        except Exception:
            logger.exception("Failed to mark job as error provider=%s job_id=%s", self._provider, job_id)

    @staticmethod
    def _account_report(slot: AccountSlot) -> AccountRunSummary:
        return AccountRunSummary(id=slot.account_id, label=slot.label, remaining_at_start=slot.remaining)


class RunsService:
    """Builds a `RunOrchestrator` for a provider from the registry and runs it."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        session_factory: SessionFactory,
        settings: Settings,
        metrics: Metrics,
        clock: Clock | None = None,
        sleep: Sleeper = sleep_seconds,
    ) -> None:
        self._registry = registry
        self._session_factory = session_factory
        self._settings = settings
        self._metrics = metrics
        self._clock = clock
        self._sleep = sleep

    def orchestrator(self, provider: str) -> RunOrchestrator:
        profile = self._registry.profile(provider).with_settings(self._settings)
        adapter = self._registry.adapter(profile.name)
        return RunOrchestrator(
            profile=profile,
            adapter=adapter,
            session_factory=self._session_factory,
            settings=self._settings,
            metrics=self._metrics,
            tenant_policy=TenantPolicy.from_settings(self._settings),
            clock=self._clock,
            sleep=self._sleep,
        )

    async def run(self, provider: str) -> RunSummary:
        return await self.orchestrator(provider).run()
