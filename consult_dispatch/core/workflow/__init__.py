from consult_dispatch.core.workflow.approval import ApprovalChain, ProviderApprover, ServiceApprover
from consult_dispatch.core.workflow.runner import PollingPolicy, WorkflowContext, WorkflowRunner, WorkflowState
from consult_dispatch.core.workflow.types import (
    Approver,
    AuthProvider,
    OperationRef,
    ProviderAdapter,
    RawEntry,
    ResultEntry,
    Subject,
    WorkflowProvider,
)

__all__ = [
    "ApprovalChain",
    "Approver",
    "AuthProvider",
    "OperationRef",
    "PollingPolicy",
    "ProviderAdapter",
    "ProviderApprover",
    "RawEntry",
    "ResultEntry",
    "ServiceApprover",
    "Subject",
    "WorkflowContext",
    "WorkflowProvider",
    "WorkflowRunner",
    "WorkflowState",
]
