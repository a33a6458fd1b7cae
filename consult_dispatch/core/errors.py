from __future__ import annotations

from typing import TypedDict


class DashboardErrorDetail(TypedDict):
    code: str
    message: str


class DashboardErrorEnvelope(TypedDict):
    error: DashboardErrorDetail


def dashboard_error(code: str, message: str) -> DashboardErrorEnvelope:
    return {"error": {"code": code, "message": message}}


class DispatchError(Exception):
    pass


class LockBusyError(DispatchError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Lock already held: {key}")
        self.key = key


class ProviderNotFoundError(DispatchError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"Unknown provider: {provider}")
        self.provider = provider


class ProviderNotConfiguredError(DispatchError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"No adapter registered for provider: {provider}")
        self.provider = provider


class WorkflowError(DispatchError):
    """Failure of one job's external workflow.

    `code` is a stable classification used for logs and metrics; the message is what ends up
    stored on the job row.
    """

    code = "workflow_failed"


class AuthenticationError(WorkflowError):
    code = "auth_failed"

    def __init__(self, message: str, *, invalid_credential: bool = False) -> None:
        super().__init__(message)
        # Invalid credentials fail every job allocated to the account; anything else is transient.
        self.invalid_credential = invalid_credential


class SubmissionError(WorkflowError):
    code = "submit_failed"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApprovalError(WorkflowError):
    code = "approval_failed"


class PollError(WorkflowError):
    code = "poll_failed"


class PollingExhaustedError(WorkflowError):
    code = "poll_exhausted"


class EmptyResultError(WorkflowError):
    code = "empty_result"
