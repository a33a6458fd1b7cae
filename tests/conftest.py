from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="consult-dispatch-tests-"))
TEST_DB_PATH = TEST_DB_DIR / "consult-dispatch.db"

os.environ["CONSULT_DISPATCH_DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["CONSULT_DISPATCH_APPROVAL_SERVICE_URLS"] = ""
os.environ["CONSULT_DISPATCH_STALE_PROCESSING_MINUTES"] = "0"

from consult_dispatch.core.errors import AuthenticationError  # noqa: E402
from consult_dispatch.core.workflow import OperationRef, Subject  # noqa: E402
from consult_dispatch.db.models import Base  # noqa: E402
from consult_dispatch.db.session import engine  # noqa: E402
from consult_dispatch.main import create_app  # noqa: E402


async def _reset_databases() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


class ManualClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 1, 15, 12, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + timedelta(**kwargs)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


PollStep = Sequence[Mapping[str, Any]] | Exception


class FakeAdapter:
    """Scriptable provider adapter.

    `poll_script` maps a subject document to the answers of successive poll calls; the last answer
    repeats once the script runs out. Documents without a script get one settled entry.
    """

    def __init__(
        self,
        *,
        poll_script: dict[str, list[PollStep]] | None = None,
        submit: Callable[[Subject], OperationRef] | None = None,
        approve_result: bool = True,
    ) -> None:
        self.poll_script = poll_script or {}
        self._submit = submit
        self.approve_result = approve_result
        self.logins: list[Mapping[str, Any]] = []
        self.submissions: list[int] = []
        self.approvals: list[str] = []
        self.polls: list[int] = []

    async def login(self, credential: Mapping[str, Any]) -> str:
        self.logins.append(credential)
        if credential.get("password") == "wrong":
            raise AuthenticationError("Invalid login or password", invalid_credential=True)
        return f"token-{credential.get('login')}"

    async def submit(self, token: str, subject: Subject) -> OperationRef:
        self.submissions.append(subject.job_id)
        if self._submit is not None:
            return self._submit(subject)
        return OperationRef(operation_id=f"op-{subject.job_id}")

    async def approve(self, url: str, subject: Subject) -> bool:
        self.approvals.append(url)
        return self.approve_result

    async def poll(self, token: str, subject: Subject, operation: OperationRef) -> Sequence[Mapping[str, Any]]:
        attempt = sum(1 for job_id in self.polls if job_id == subject.job_id)
        self.polls.append(subject.job_id)
        script = self.poll_script.get(subject.document)
        if script is None:
            return [
                {
                    "status": "APPROVED",
                    "description": "Eligible",
                    "value": "1.500,00",
                    "document": subject.document,
                }
            ]
        step = script[min(attempt, len(script) - 1)]
        if isinstance(step, Exception):
            raise step
        return list(step)


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fake_adapter_factory() -> type[FakeAdapter]:
    return FakeAdapter


@pytest_asyncio.fixture
async def app_instance():
    app = create_app()
    await _reset_databases()
    return app


@pytest_asyncio.fixture(scope="session", autouse=True)
async def dispose_engine():
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def db_setup():
    await _reset_databases()
    return True


@pytest_asyncio.fixture
async def async_client(app_instance):
    async with app_instance.router.lifespan_context(app_instance):
        transport = ASGITransport(app=app_instance)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    from consult_dispatch.core.config.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
