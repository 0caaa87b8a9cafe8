"""
SQS queue executor.

A message is handed to a consumer service; the queue offers no execution
handle, so the message id is returned for reference only and completion is
observed through the worker's logs (see CloudWatchLogStore.find_output).
"""

import json
from typing import Any, Dict, Optional

from fargate_e2e.common.aws_clients import get_sqs_client
from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import NotFoundError, SubmissionError
from fargate_e2e.common.logging_utils import get_logger, log_external_service_call
from fargate_e2e.models.execution_models import Execution, ExecutionState, Submission
from fargate_e2e.services.executors.base import aws_call

logger = get_logger(__name__)


def job_message(submission: Submission, action: str = "test") -> Dict[str, Any]:
    """Message body understood by the queue worker; job_id is the correlation token."""
    return {
        "job_id": submission.correlation_token,
        "action": action,
        "payload": submission.payload,
    }


class SqsQueueExecutor:
    name = "sqs"

    def __init__(self, client=None, deadline: Optional[Deadline] = None, action: str = "test"):
        self.client = client or get_sqs_client()
        self.deadline = deadline
        self.action = action
        # message id -> queue url for describe(); one executor per scenario run, so this stays small
        self._sent: Dict[str, str] = {}

    @log_external_service_call("sqs", "send_message")
    def submit(self, submission: Submission) -> str:
        body = json.dumps(job_message(submission, self.action))
        response = aws_call(
            self.client.send_message, "sqs", "send_message",
            submitting=True, identifier=submission.target,
            QueueUrl=submission.target,
            MessageBody=body,
        )
        message_id = response.get("MessageId")
        if not message_id:
            raise SubmissionError(submission.target, "SendMessage returned no MessageId")
        self._sent[message_id] = submission.target
        logger.info(f"📨 Message sent: {message_id} (job_id={submission.correlation_token})")
        return message_id

    def describe(self, handle: str) -> Execution:
        """
        Queues expose no per-message state; the closest answer is the depth of
        the queue the message was sent to. RUNNING while anything is visible or
        in flight, SUCCEEDED once the queue is drained.
        """
        queue_url = self._sent.get(handle)
        if queue_url is None:
            raise NotFoundError("SQS message", handle)
        counts = self.queue_attributes(queue_url)
        drained = counts["visible"] == 0 and counts["in_flight"] == 0
        return Execution(
            handle=handle,
            state=ExecutionState.SUCCEEDED if drained else ExecutionState.RUNNING,
            raw_status="DRAINED" if drained else "BUSY",
            details=counts,
        )

    def queue_attributes(self, queue_url: str) -> Dict[str, int]:
        response = aws_call(
            self.client.get_queue_attributes, "sqs", "get_queue_attributes",
            deadline=self.deadline, identifier=queue_url,
            QueueUrl=queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attributes = response.get("Attributes") or {}
        return {
            "visible": int(attributes.get("ApproximateNumberOfMessages", 0)),
            "in_flight": int(attributes.get("ApproximateNumberOfMessagesNotVisible", 0)),
        }

    def queue_drained(self, queue_url: str) -> bool:
        """True when no message is waiting or being processed (the worker deleted it)."""
        counts = self.queue_attributes(queue_url)
        return counts["visible"] == 0 and counts["in_flight"] == 0
