"""
AsyncExecutor contract.

Each backend (ECS task, Step Functions, EventBridge trigger, SQS queue,
Batch array job) implements this protocol structurally; there is no
shared base class.

submit() is NOT idempotent and is never retried automatically.
describe() is a read and may be retried freely; it raises NotFoundError for
unknown handles and TransientError for throttling/network failures.
"""

from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from botocore.exceptions import ClientError

from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.error_handlers import translate_client_error
from fargate_e2e.common.retry_utils import retry_call
from fargate_e2e.models.execution_models import Execution, ExecutionState, Submission


@runtime_checkable
class AsyncExecutor(Protocol):
    name: str

    def submit(self, submission: Submission) -> Optional[str]:
        """Start work. Returns the handle, or None when correlation is required."""
        ...

    def describe(self, handle: str) -> Execution:
        ...


@runtime_checkable
class ListableExecutor(AsyncExecutor, Protocol):
    """Executors whose recent executions can be listed for correlation."""

    def list_recent(self, target: str) -> List[Execution]:
        ...

    def execution_mentions(self, handle: str, token: str) -> bool:
        ...


def map_state(raw_status: Optional[str], table: Dict[str, ExecutionState]) -> ExecutionState:
    """Collapse a backend status string into ExecutionState (unknown -> PENDING)."""
    if not raw_status:
        return ExecutionState.PENDING
    return table.get(raw_status.upper(), ExecutionState.PENDING)


STEPFUNCTIONS_STATES: Dict[str, ExecutionState] = {
    "RUNNING": ExecutionState.RUNNING,
    "SUCCEEDED": ExecutionState.SUCCEEDED,
    "FAILED": ExecutionState.FAILED,
    "TIMED_OUT": ExecutionState.TIMED_OUT,
    "ABORTED": ExecutionState.ABORTED,
    "PENDING_REDRIVE": ExecutionState.RUNNING,
}

BATCH_STATES: Dict[str, ExecutionState] = {
    "SUBMITTED": ExecutionState.PENDING,
    "PENDING": ExecutionState.PENDING,
    "RUNNABLE": ExecutionState.PENDING,
    "STARTING": ExecutionState.RUNNING,
    "RUNNING": ExecutionState.RUNNING,
    "SUCCEEDED": ExecutionState.SUCCEEDED,
    "FAILED": ExecutionState.FAILED,
}

# ECS lastStatus; STOPPED is resolved to SUCCEEDED/FAILED by exit code
ECS_TASK_STATES: Dict[str, ExecutionState] = {
    "PROVISIONING": ExecutionState.PENDING,
    "PENDING": ExecutionState.PENDING,
    "ACTIVATING": ExecutionState.PENDING,
    "RUNNING": ExecutionState.RUNNING,
    "DEACTIVATING": ExecutionState.RUNNING,
    "STOPPING": ExecutionState.RUNNING,
    "DEPROVISIONING": ExecutionState.RUNNING,
}


def aws_call(
    method: Callable[..., Dict[str, Any]],
    service: str,
    operation: str,
    *,
    deadline: Optional[Deadline] = None,
    max_retries: int = 3,
    identifier: Optional[str] = None,
    submitting: bool = False,
    **kwargs: Any,
) -> Dict[str, Any]:
    """
    Invoke one boto3 operation.

    Reads are retried with backoff; submissions pass max_retries=0 and
    submitting=True so a rejected submit surfaces as SubmissionError.
    ClientErrors leave this function already translated.
    """
    try:
        return retry_call(
            method,
            kwargs=kwargs,
            max_retries=0 if submitting else max_retries,
            deadline=deadline,
            service=service,
            operation=operation,
        )
    except ClientError as e:
        raise translate_client_error(e, service, operation, identifier=identifier, submitting=submitting) from e
