from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from consult_dispatch.core.config.settings import get_settings
from consult_dispatch.core.metrics import get_metrics
from consult_dispatch.db.session import SessionLocal, get_session
from consult_dispatch.modules.accounts.repository import AccountsRepository
from consult_dispatch.modules.accounts.service import AccountsService
from consult_dispatch.modules.jobs.repository import JobsRepository
from consult_dispatch.modules.jobs.service import JobsService
from consult_dispatch.modules.providers.registry import ProviderRegistry, get_provider_registry
from consult_dispatch.modules.runs.service import RunsService


@dataclass(slots=True)
class AccountsContext:
    session: AsyncSession
    repository: AccountsRepository
    service: AccountsService
    registry: ProviderRegistry


@dataclass(slots=True)
class JobsContext:
    session: AsyncSession
    repository: JobsRepository
    service: JobsService
    registry: ProviderRegistry


@dataclass(slots=True)
class RunsContext:
    service: RunsService
    registry: ProviderRegistry


def get_accounts_context(
    session: AsyncSession = Depends(get_session),
) -> AccountsContext:
    repository = AccountsRepository(session)
    return AccountsContext(
        session=session,
        repository=repository,
        service=AccountsService(repository),
        registry=get_provider_registry(),
    )


def get_jobs_context(
    session: AsyncSession = Depends(get_session),
) -> JobsContext:
    repository = JobsRepository(session)
    return JobsContext(
        session=session,
        repository=repository,
        service=JobsService(repository),
        registry=get_provider_registry(),
    )


def get_runs_context() -> RunsContext:
    # Runs open their own sessions: parallel per-account workers cannot share one.
    registry = get_provider_registry()
    service = RunsService(
        registry,
        session_factory=SessionLocal,
        settings=get_settings(),
        metrics=get_metrics(),
    )
    return RunsContext(service=service, registry=registry)
