"""
Queue round-trip scenario.

Wait for the worker service to run, send one job message carrying a unique
job_id, then search the worker's log group for that job_id followed by a
success marker. Once found, the queue must have drained (the worker deletes
the message after processing).
"""

from pydantic import Field

from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import AssertionFailure, DeadlineExceeded
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.models.execution_models import ScenarioStage, Submission, utc_now
from fargate_e2e.services.executors.ecs_task import EcsServiceProbe
from fargate_e2e.services.executors.sqs_queue import SqsQueueExecutor
from fargate_e2e.services.log_store import CloudWatchLogStore
from fargate_e2e.services.poller import poll_until
from fargate_e2e.services.scenarios.base import Scenario, ScenarioParams, ScenarioRun

logger = get_logger(__name__)


class BackgroundQueueParams(ScenarioParams):
    queue_url: str = Field(..., min_length=1)
    log_group: str = Field(..., min_length=1)
    cluster_arn: str = Field(..., min_length=1)
    service_name: str = Field(..., min_length=1)
    message: str = "Hello from E2E test!"
    action: str = "test"
    timeout_seconds: float = Field(default=120.0, gt=0)


class BackgroundQueueScenario(Scenario):
    name = "sqs"
    description = "Send a job message to the queue and find its result in the worker logs"
    params_model = BackgroundQueueParams

    store = None

    def execute(self, run: ScenarioRun) -> str:
        p: BackgroundQueueParams = self.params
        polling = self.settings.polling

        logger.info("Verifying ECS service is running...")
        probe = EcsServiceProbe(p.cluster_arn, client=self.client("ecs"), deadline=run.deadline)
        probe.wait_until_running(
            {p.service_name: 1},
            run.deadline.child(polling.readiness_timeout_seconds),
            poll_interval=polling.poll_interval_seconds,
            require_active=True,
        )
        run.check("worker service running", True, {"service": p.service_name})

        self.store = CloudWatchLogStore(
            client=self.client("logs"), deadline=run.deadline, stream_limit=self.settings.logs.stream_limit
        )
        executor = SqsQueueExecutor(client=self.client("sqs"), deadline=run.deadline, action=p.action)
        submission = Submission(
            target=p.queue_url,
            payload={"message": p.message, "timestamp": utc_now().strftime("%Y-%m-%dT%H:%M:%SZ")},
        )
        job_id = submission.correlation_token
        message_id = executor.submit(submission)
        run.advance(ScenarioStage.SUBMITTED, message_id=message_id, job_id=job_id)

        run.advance(ScenarioStage.POLLING, job_id=job_id)
        logs = self.settings.logs
        records, found = self.store.find_output(
            p.log_group,
            token=job_id,
            since=submission.submitted_at,
            poll_interval=polling.poll_interval_seconds,
            max_attempts=logs.find_max_attempts,
            deadline=run.deadline,
            success_markers=logs.success_markers,
            reset_marker=logs.reset_marker,
            lookback_seconds=logs.lookback_seconds,
        )
        run.advance(ScenarioStage.TERMINAL, job_id=job_id, found=found)
        if not found:
            raise AssertionFailure(
                "job result in worker logs",
                expected=f"{job_id} with a success marker",
                actual=f"{len(records)} matching record(s)",
                details=f"searched {p.log_group}",
            )
        run.check("job result in worker logs", True, {"records": len(records)})

        drained = self._wait_drained(run, executor, p.queue_url)
        run.require("message deleted after processing", True, drained)

        self.collect_log_tail(run, self.store, p.log_group, logs.success_tail_size)
        run.advance(ScenarioStage.VERIFIED, job_id=job_id)
        return f"Message {message_id} (job {job_id}) processed successfully"

    def _wait_drained(self, run: ScenarioRun, executor: SqsQueueExecutor, queue_url: str) -> bool:
        polling = self.settings.polling
        wait: Deadline = run.deadline.child(polling.readiness_timeout_seconds)
        try:
            return poll_until(
                lambda: True if executor.queue_drained(queue_url) else None,
                wait,
                polling.poll_interval_seconds,
                f"queue {queue_url} to drain",
            )
        except DeadlineExceeded:
            return False

    def diagnose(self, run: ScenarioRun, error: BaseException) -> None:
        if self.store is not None and not run.log_tail:
            self.collect_log_tail(run, self.store, self.params.log_group)
