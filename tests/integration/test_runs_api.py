from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry
from sqlalchemy.exc import SQLAlchemyError

from consult_dispatch.core.config.settings import get_settings
from consult_dispatch.core.locks import hold_lock, run_lock_key
from consult_dispatch.core.metrics.metrics import Metrics
from consult_dispatch.db.models import Account, Job, JobStatus
from consult_dispatch.db.session import SessionLocal
from consult_dispatch.dependencies import RunsContext, get_runs_context
from consult_dispatch.modules.providers.registry import ProviderRegistry
from consult_dispatch.modules.runs.persister import ResultPersister
from consult_dispatch.modules.runs.service import RunsService

pytestmark = pytest.mark.integration


@pytest.fixture
def runs_registry(app_instance, fake_adapter_factory, sleep_recorder):
    registry = ProviderRegistry()
    registry.register_adapter("v8", fake_adapter_factory())

    def _context() -> RunsContext:
        service = RunsService(
            registry,
            session_factory=SessionLocal,
            settings=get_settings(),
            metrics=Metrics(registry=CollectorRegistry()),
            sleep=sleep_recorder,
        )
        return RunsContext(service=service, registry=registry)

    app_instance.dependency_overrides[get_runs_context] = _context
    yield registry
    app_instance.dependency_overrides.pop(get_runs_context, None)


async def _seed_v8() -> int:
    async with SessionLocal() as session:
        session.add(
            Account(
                provider="v8",
                label="v8-main",
                credential={"login": "operator", "password": "secret"},
                daily_limit=10,
            )
        )
        job = Job(provider="v8", name="Maria da Silva", document="11111111111", status=JobStatus.PENDING)
        session.add(job)
        await session.commit()
        return job.id


@pytest.mark.asyncio
async def test_run_returns_summary(async_client, runs_registry):
    job_id = await _seed_v8()

    response = await async_client.post("/api/runs/v8")

    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["provider"] == "v8"
    assert payload["jobs_found"] == 1
    assert payload["jobs_processed"] == 1
    assert payload["accounts"][0]["label"] == "v8-main"
    assert payload["started_at"].endswith("Z")

    async with SessionLocal() as session:
        job = await session.get(Job, job_id)
        assert job is not None
        assert job.status == JobStatus.CONSULTED


@pytest.mark.asyncio
async def test_run_unknown_provider_returns_404(async_client, runs_registry):
    response = await async_client.post("/api/runs/acme")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "provider_not_found"


@pytest.mark.asyncio
async def test_run_without_adapter_returns_503(async_client, runs_registry):
    response = await async_client.post("/api/runs/presenca")

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "provider_not_configured"


@pytest.mark.asyncio
async def test_run_while_locked_returns_409(async_client, runs_registry):
    await _seed_v8()

    async with hold_lock(SessionLocal, run_lock_key("v8"), ttl_seconds=60):
        response = await async_client.post("/api/runs/v8")

    assert response.status_code == 409
    assert response.json() == {
        "ok": False,
        "message": "Another run is already in progress",
        "provider": "v8",
    }


@pytest.mark.asyncio
async def test_failed_run_returns_500_with_summary(async_client, runs_registry, monkeypatch):
    await _seed_v8()

    async def failing_persist(self, repository, job, subject, entries, *, now=None):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(ResultPersister, "persist_success", failing_persist)

    response = await async_client.post("/api/runs/v8")

    assert response.status_code == 500
    payload = response.json()
    assert payload["ok"] is False
    assert payload["message"] == "database is locked"
    assert payload["provider"] == "v8"
