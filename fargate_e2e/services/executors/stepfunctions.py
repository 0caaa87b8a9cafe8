"""
Step Functions executor.

Direct submissions call StartExecution and get an authoritative handle back.
Executions started indirectly (EventBridge rule, schedule) are found through
list_recent() by the correlator.
"""

from typing import Any, Dict, List, Optional

from fargate_e2e.common.aws_clients import get_stepfunctions_client
from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import SubmissionError
from fargate_e2e.common.json_utils import try_parse_json
from fargate_e2e.common.logging_utils import get_logger, log_external_service_call
from fargate_e2e.models.execution_models import Execution, ExecutionState, Submission
from fargate_e2e.services.executors.base import STEPFUNCTIONS_STATES, aws_call, map_state

logger = get_logger(__name__)


class StepFunctionsExecutor:
    name = "stepfunctions"

    def __init__(self, client=None, deadline: Optional[Deadline] = None, max_retries: int = 2,
                 list_page_size: int = 10, status_filter: Optional[str] = None):
        self.client = client or get_stepfunctions_client()
        self.deadline = deadline
        self.max_retries = max_retries
        self.list_page_size = list_page_size
        # None lists every status so fast executions that already finished are still candidates
        self.status_filter = status_filter

    @log_external_service_call("stepfunctions", "start_execution")
    def submit(self, submission: Submission) -> str:
        response = aws_call(
            self.client.start_execution, "stepfunctions", "start_execution",
            submitting=True,
            identifier=submission.target,
            stateMachineArn=submission.target,
            name=f"e2e-{submission.correlation_token}",
            input=submission.serialized_payload(),
        )
        arn = response.get("executionArn")
        if not arn:
            raise SubmissionError(submission.target, "StartExecution returned no executionArn")
        logger.info(f"🚀 Execution started: {arn}")
        return arn

    def describe(self, handle: str) -> Execution:
        response = aws_call(
            self.client.describe_execution, "stepfunctions", "describe_execution",
            deadline=self.deadline, max_retries=self.max_retries, identifier=handle,
            executionArn=handle,
        )
        return self._to_execution(response)

    def list_recent(self, target: str) -> List[Execution]:
        kwargs: Dict[str, Any] = {"stateMachineArn": target, "maxResults": self.list_page_size}
        if self.status_filter:
            kwargs["statusFilter"] = self.status_filter
        response = aws_call(
            self.client.list_executions, "stepfunctions", "list_executions",
            deadline=self.deadline, max_retries=self.max_retries, identifier=target,
            **kwargs,
        )
        return [
            Execution(
                handle=item.get("executionArn"),
                name=item.get("name"),
                state=map_state(item.get("status"), STEPFUNCTIONS_STATES),
                raw_status=item.get("status"),
                started_at=item.get("startDate"),
                stopped_at=item.get("stopDate"),
            )
            for item in response.get("executions") or []
        ]

    def execution_mentions(self, handle: str, token: str) -> bool:
        """True when the execution's input carries ``token``."""
        response = aws_call(
            self.client.describe_execution, "stepfunctions", "describe_execution",
            deadline=self.deadline, max_retries=self.max_retries, identifier=handle,
            executionArn=handle,
        )
        return token in (response.get("input") or "")

    def _to_execution(self, response: Dict[str, Any]) -> Execution:
        status = response.get("status")
        state = map_state(status, STEPFUNCTIONS_STATES)

        output = None
        reason = None
        if state is ExecutionState.SUCCEEDED:
            raw_output = response.get("output")
            parsed = try_parse_json(raw_output)
            output = parsed if parsed is not None else raw_output
        elif state.is_failure:
            error = response.get("error") or status
            cause = response.get("cause")
            reason = f"{error}: {cause}" if cause else error

        return Execution(
            handle=response.get("executionArn"),
            name=response.get("name"),
            state=state,
            raw_status=status,
            started_at=response.get("startDate"),
            stopped_at=response.get("stopDate"),
            input=response.get("input"),
            output=output,
            failure_reason=reason,
        )

