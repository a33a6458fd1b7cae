from __future__ import annotations

import pytest

from consult_dispatch.core.errors import (
    ApprovalError,
    AuthenticationError,
    EmptyResultError,
    PollError,
    PollingExhaustedError,
    SubmissionError,
)
from consult_dispatch.core.workflow import OperationRef, PollingPolicy, Subject, WorkflowRunner, WorkflowState

pytestmark = pytest.mark.unit

DOCUMENT = "01234567890"
CREDENTIAL = {"login": "operator", "password": "secret"}
PENDING = {"status": "WAITING_CONSENT", "description": "Aguardando", "document": DOCUMENT}
APPROVED = {"status": "APPROVED", "description": "Elegivel", "value": "2.000,00", "document": DOCUMENT}


def _subject(job_id: int = 1) -> Subject:
    return Subject(job_id=job_id, name="MARIA DA SILVA", document=DOCUMENT, phone="11999990000")


def _runner(adapter, sleep_recorder, **kwargs) -> WorkflowRunner:
    polling = PollingPolicy(max_attempts=5, delay_seconds=3.0, pending_statuses=frozenset({"WAITING_CONSENT"}))
    return WorkflowRunner(adapter, polling=polling, sleep=sleep_recorder, **kwargs)


@pytest.mark.asyncio
async def test_polling_sleeps_between_attempts_until_settled(fake_adapter_factory, sleep_recorder):
    adapter = fake_adapter_factory(poll_script={DOCUMENT: [[PENDING]] * 4 + [[APPROVED]]})
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert context.state == WorkflowState.DONE
    assert context.succeeded
    assert [entry.status for entry in context.entries] == ["APPROVED"]
    assert context.entries[0].value == 2000.0
    assert context.poll_attempts == 5
    assert sleep_recorder.calls == [3.0] * 4
    assert context.history == [
        WorkflowState.INIT,
        WorkflowState.AUTHENTICATED,
        WorkflowState.SUBMITTED,
        WorkflowState.POLLING,
    ]


@pytest.mark.asyncio
async def test_polling_exhausted_with_pending_entries_keeps_last_entries(fake_adapter_factory, sleep_recorder):
    adapter = fake_adapter_factory(poll_script={DOCUMENT: [[PENDING]]})
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert context.state == WorkflowState.DONE
    assert [entry.status for entry in context.entries] == ["WAITING_CONSENT"]
    assert len(adapter.polls) == 5
    assert sleep_recorder.calls == [3.0] * 4


@pytest.mark.asyncio
async def test_settled_first_poll_does_not_sleep(fake_adapter_factory, sleep_recorder):
    adapter = fake_adapter_factory()
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert context.succeeded
    assert sleep_recorder.calls == []


@pytest.mark.asyncio
async def test_poll_errors_are_retried(fake_adapter_factory, sleep_recorder):
    adapter = fake_adapter_factory(poll_script={DOCUMENT: [RuntimeError("connection reset"), [APPROVED]]})
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert context.succeeded
    assert sleep_recorder.calls == [3.0]


@pytest.mark.asyncio
async def test_poll_failing_on_every_attempt_surfaces_last_error(fake_adapter_factory, sleep_recorder):
    adapter = fake_adapter_factory(poll_script={DOCUMENT: [PollError("HTTP_502 bad gateway")]})
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert context.state == WorkflowState.FAILED
    assert isinstance(context.error, PollError)
    assert str(context.error) == "HTTP_502 bad gateway"
    assert len(adapter.polls) == 5


@pytest.mark.asyncio
async def test_poll_without_entries_is_exhausted(fake_adapter_factory, sleep_recorder):
    adapter = fake_adapter_factory(poll_script={DOCUMENT: [[]]})
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert isinstance(context.error, PollingExhaustedError)


@pytest.mark.asyncio
async def test_entries_for_other_subjects_yield_empty_result(fake_adapter_factory, sleep_recorder):
    foreign = {"status": "APPROVED", "description": "someone else", "document": "99999999999"}
    adapter = fake_adapter_factory(poll_script={DOCUMENT: [[foreign]]})
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert isinstance(context.error, EmptyResultError)
    assert context.entries == []


@pytest.mark.asyncio
async def test_submission_failure_skips_polling(fake_adapter_factory, sleep_recorder):
    def reject(subject: Subject) -> OperationRef:
        raise SubmissionError("HTTP_422 CPF invalido", status_code=422)

    adapter = fake_adapter_factory(submit=reject)
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert context.state == WorkflowState.FAILED
    assert isinstance(context.error, SubmissionError)
    assert context.error.code == "submit_failed"
    assert not context.submission_accepted
    assert adapter.polls == []


@pytest.mark.asyncio
async def test_invalid_credentials_fail_at_the_account_level(fake_adapter_factory, sleep_recorder):
    adapter = fake_adapter_factory()
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential={"login": "op", "password": "wrong"})

    assert context.state == WorkflowState.FAILED
    assert isinstance(context.error, AuthenticationError)
    assert context.account_level_failure
    assert adapter.submissions == []


@pytest.mark.asyncio
async def test_unexpected_login_error_is_a_transient_authentication_failure(fake_adapter_factory, sleep_recorder):
    adapter = fake_adapter_factory()

    async def broken_login(credential):
        raise RuntimeError("dns failure")

    adapter.login = broken_login
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert isinstance(context.error, AuthenticationError)
    assert not context.account_level_failure
    assert "dns failure" in str(context.error)


@pytest.mark.asyncio
async def test_tokens_are_reused_per_account(fake_adapter_factory, sleep_recorder):
    adapter = fake_adapter_factory()
    runner = _runner(adapter, sleep_recorder)

    await runner.run(account_id=1, subject=_subject(1), credential=CREDENTIAL)
    await runner.run(account_id=1, subject=_subject(2), credential=CREDENTIAL)
    await runner.run(account_id=2, subject=_subject(3), credential=CREDENTIAL)

    assert len(adapter.logins) == 2


@pytest.mark.asyncio
async def test_tokens_are_not_reused_when_disabled(fake_adapter_factory, sleep_recorder):
    adapter = fake_adapter_factory()
    runner = _runner(adapter, sleep_recorder, reuse_token=False)

    await runner.run(account_id=1, subject=_subject(1), credential=CREDENTIAL)
    await runner.run(account_id=1, subject=_subject(2), credential=CREDENTIAL)

    assert len(adapter.logins) == 2


@pytest.mark.asyncio
async def test_approval_url_routes_through_the_approval_step(fake_adapter_factory, sleep_recorder):
    url = "https://consent.example/abc"
    adapter = fake_adapter_factory(submit=lambda subject: OperationRef(operation_id="op-1", approval_url=url))
    runner = _runner(adapter, sleep_recorder, step_delay_seconds=2.0)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert context.succeeded
    assert adapter.approvals == [url]
    assert context.approval_channel == "provider"
    assert WorkflowState.AWAITING_APPROVAL in context.history
    assert sleep_recorder.calls == [2.0]


@pytest.mark.asyncio
async def test_rejected_approval_fails_the_job(fake_adapter_factory, sleep_recorder):
    url = "https://consent.example/abc"
    adapter = fake_adapter_factory(
        submit=lambda subject: OperationRef(operation_id="op-1", approval_url=url),
        approve_result=False,
    )
    runner = _runner(adapter, sleep_recorder)

    context = await runner.run(account_id=1, subject=_subject(), credential=CREDENTIAL)

    assert isinstance(context.error, ApprovalError)
    assert str(context.error).startswith("Automatic approval failed.")
    assert adapter.polls == []
