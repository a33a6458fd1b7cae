from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from consult_dispatch.core.errors import (
    ApprovalError,
    AuthenticationError,
    EmptyResultError,
    PollError,
    PollingExhaustedError,
    WorkflowError,
)
from consult_dispatch.core.utils.time import Sleeper, sleep_seconds
from consult_dispatch.core.workflow.approval import ApprovalChain, ProviderApprover
from consult_dispatch.core.workflow.entries import all_pending, distinct_entries, filter_for_subject, normalize_entries
from consult_dispatch.core.workflow.types import OperationRef, ProviderAdapter, ResultEntry, Subject

logger = logging.getLogger(__name__)


class WorkflowState(str, Enum):
    INIT = "init"
    AUTHENTICATED = "authenticated"
    SUBMITTED = "submitted"
    AWAITING_APPROVAL = "awaiting_approval"
    POLLING = "polling"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({WorkflowState.DONE, WorkflowState.FAILED})


@dataclass(frozen=True, slots=True)
class PollingPolicy:
    max_attempts: int = 5
    delay_seconds: float = 3.0
    pending_statuses: frozenset[str] = frozenset()


@dataclass(slots=True)
class WorkflowContext:
    account_id: int
    subject: Subject
    credential: Mapping[str, Any] | None = field(default=None, repr=False)
    state: WorkflowState = WorkflowState.INIT
    token: str | None = field(default=None, repr=False)
    operation: OperationRef | None = None
    entries: list[ResultEntry] = field(default_factory=list)
    poll_attempts: int = 0
    approval_channel: str | None = None
    error: WorkflowError | None = None
    history: list[WorkflowState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == WorkflowState.DONE

    @property
    def submission_accepted(self) -> bool:
        return self.operation is not None and self.operation.accepted

    @property
    def account_level_failure(self) -> bool:
        return isinstance(self.error, AuthenticationError) and self.error.invalid_credential


Transition = Callable[[WorkflowContext], Awaitable[WorkflowState]]


class WorkflowRunner:
    """Drives one job through authenticate, submit, optional approval and polling.

    Each state has exactly one transition handler. A handler either returns the next state or
    raises a `WorkflowError`, which moves the context to FAILED. Tokens are cached per account
    for the lifetime of the runner when `reuse_token` is set.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        *,
        polling: PollingPolicy,
        approvals: ApprovalChain | None = None,
        step_delay_seconds: float = 0.0,
        reuse_token: bool = True,
        sleep: Sleeper = sleep_seconds,
    ) -> None:
        self._adapter = adapter
        self._polling = polling
        self._approvals = approvals or ApprovalChain([ProviderApprover(adapter)], sleep=sleep)
        self._step_delay_seconds = step_delay_seconds
        self._reuse_token = reuse_token
        self._sleep = sleep
        self._tokens: dict[int, str] = {}
        self._transitions: dict[WorkflowState, Transition] = {
            WorkflowState.INIT: self.authenticate,
            WorkflowState.AUTHENTICATED: self.submit,
            WorkflowState.SUBMITTED: self.route_submission,
            WorkflowState.AWAITING_APPROVAL: self.await_approval,
            WorkflowState.POLLING: self.poll,
        }

    def forget_token(self, account_id: int) -> None:
        self._tokens.pop(account_id, None)

    async def run(
        self,
        *,
        account_id: int,
        subject: Subject,
        credential: Mapping[str, Any] | None,
    ) -> WorkflowContext:
        context = WorkflowContext(account_id=account_id, subject=subject, credential=credential)
        while context.state not in TERMINAL_STATES:
            await self.step(context)
        return context

    async def step(self, context: WorkflowContext) -> WorkflowState:
        handler = self._transitions[context.state]
        context.history.append(context.state)
        try:
            context.state = await handler(context)
        except WorkflowError as exc:
            self._fail(context, exc)
        except Exception as exc:
            logger.exception(
                "Unexpected workflow failure job_id=%s account_id=%s state=%s",
                context.subject.job_id,
                context.account_id,
                context.state.value,
            )
            self._fail(context, WorkflowError(str(exc) or type(exc).__name__))
        return context.state

    async def authenticate(self, context: WorkflowContext) -> WorkflowState:
        cached = self._tokens.get(context.account_id) if self._reuse_token else None
        if cached:
            context.token = cached
            return WorkflowState.AUTHENTICATED

        try:
            token = await self._adapter.login(context.credential or {})
        except AuthenticationError:
            raise
        except WorkflowError as exc:
            raise AuthenticationError(str(exc)) from exc
        except Exception as exc:
            raise AuthenticationError(f"Authentication failed: {exc}") from exc
        if not token:
            raise AuthenticationError("Authentication returned no token", invalid_credential=True)

        context.token = token
        if self._reuse_token:
            self._tokens[context.account_id] = token
        return WorkflowState.AUTHENTICATED

    async def submit(self, context: WorkflowContext) -> WorkflowState:
        operation = await self._adapter.submit(context.token or "", context.subject)
        context.operation = operation
        if operation.duplicate:
            logger.info(
                "Submission already exists job_id=%s operation_id=%s",
                context.subject.job_id,
                operation.operation_id,
            )
        return WorkflowState.SUBMITTED

    async def route_submission(self, context: WorkflowContext) -> WorkflowState:
        operation = context.operation
        if operation is not None and operation.approval_url:
            return WorkflowState.AWAITING_APPROVAL
        return WorkflowState.POLLING

    async def await_approval(self, context: WorkflowContext) -> WorkflowState:
        url = context.operation.approval_url if context.operation is not None else None
        if not url:
            raise ApprovalError("Approval required but no approval URL was returned")
        context.approval_channel = await self._approvals.approve(url, context.subject)
        await self._sleep(self._step_delay_seconds)
        return WorkflowState.POLLING

    async def poll(self, context: WorkflowContext) -> WorkflowState:
        policy = self._polling
        operation = context.operation or OperationRef()
        last_entries: list[ResultEntry] = []
        last_error: WorkflowError | None = None
        settled = False

        for attempt in range(1, policy.max_attempts + 1):
            context.poll_attempts = attempt
            try:
                raw_entries = await self._adapter.poll(context.token or "", context.subject, operation)
            except PollError as exc:
                last_error = exc
            except WorkflowError:
                raise
            except Exception as exc:
                last_error = PollError(str(exc) or type(exc).__name__)
            else:
                entries = distinct_entries(normalize_entries(raw_entries))
                if entries:
                    last_entries = entries
                    if not all_pending(entries, policy.pending_statuses):
                        settled = True
                        break

            if attempt < policy.max_attempts:
                await self._sleep(policy.delay_seconds)

        if not last_entries:
            if last_error is not None:
                raise last_error
            raise PollingExhaustedError(f"No result entries after {policy.max_attempts} polling attempts")

        if not settled:
            logger.info(
                "Polling exhausted with pending entries job_id=%s attempts=%s",
                context.subject.job_id,
                policy.max_attempts,
            )

        entries = filter_for_subject(last_entries, context.subject)
        if not entries:
            raise EmptyResultError("Workflow completed without usable entries")
        context.entries = entries
        return WorkflowState.DONE

    def _fail(self, context: WorkflowContext, error: WorkflowError) -> None:
        context.error = error
        context.state = WorkflowState.FAILED
        if isinstance(error, AuthenticationError):
            self.forget_token(context.account_id)
        logger.warning(
            "Workflow failed job_id=%s account_id=%s code=%s error=%s",
            context.subject.job_id,
            context.account_id,
            error.code,
            error,
        )
