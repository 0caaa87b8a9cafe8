"""
AWS Batch array job executor.

submit() starts one array job; describe() reports the parent's status plus
the per-state child counts from arrayProperties.statusSummary. The poller
keeps waiting until every child is terminal, even if one already failed.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fargate_e2e.common.aws_clients import get_batch_client
from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import NotFoundError, SubmissionError
from fargate_e2e.common.logging_utils import get_logger, log_external_service_call
from fargate_e2e.models.execution_models import ArrayStatusSummary, Execution, ExecutionState, Submission
from fargate_e2e.services.executors.base import BATCH_STATES, aws_call, map_state

logger = get_logger(__name__)

PROGRESS_STATES = ("PENDING", "RUNNABLE", "RUNNING", "SUCCEEDED", "FAILED")
DESCRIBE_JOBS_LIMIT = 100


class BatchArrayExecutor:
    name = "batch"

    def __init__(
        self,
        job_queue: str,
        container_input_env: str = "JOB_INPUT",
        job_timeout_seconds: int = 300,
        job_name_prefix: str = "e2e-test-job",
        client=None,
        deadline: Optional[Deadline] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.job_queue = job_queue
        self.container_input_env = container_input_env
        self.job_timeout_seconds = job_timeout_seconds
        self.job_name_prefix = job_name_prefix
        self.client = client or get_batch_client()
        self.deadline = deadline
        self.clock = clock

    @log_external_service_call("batch", "submit_job")
    def submit(self, submission: Submission) -> str:
        job_name = f"{self.job_name_prefix}-{int(self.clock())}"
        kwargs: Dict[str, Any] = {
            "jobName": job_name,
            "jobQueue": self.job_queue,
            "jobDefinition": submission.target,
            "containerOverrides": {
                "environment": [{"name": self.container_input_env, "value": submission.serialized_payload()}]
            },
            "timeout": {"attemptDurationSeconds": self.job_timeout_seconds},
        }
        if submission.array_size:
            kwargs["arrayProperties"] = {"size": submission.array_size}

        response = aws_call(
            self.client.submit_job, "batch", "submit_job",
            submitting=True, identifier=submission.target,
            **kwargs,
        )
        job_id = response.get("jobId")
        if not job_id:
            raise SubmissionError(submission.target, "SubmitJob returned no jobId")
        logger.info(f"🚀 Job submitted: {job_name} ({job_id})")
        return job_id

    def _describe_job(self, job_id: str) -> Dict[str, Any]:
        response = aws_call(
            self.client.describe_jobs, "batch", "describe_jobs",
            deadline=self.deadline, identifier=job_id,
            jobs=[job_id],
        )
        jobs = response.get("jobs") or []
        if not jobs:
            raise NotFoundError("Batch job", job_id)
        return jobs[0]

    def describe(self, handle: str) -> Execution:
        job = self._describe_job(handle)
        status = job.get("status")
        parent_state = map_state(status, BATCH_STATES)

        summary = None
        array_properties = job.get("arrayProperties") or {}
        if array_properties.get("size"):
            raw_counts = {k: int(v) for k, v in (array_properties.get("statusSummary") or {}).items()}
            counts: Dict[ExecutionState, int] = {}
            for raw, n in raw_counts.items():
                state = map_state(raw, BATCH_STATES)
                counts[state] = counts.get(state, 0) + n
            summary = ArrayStatusSummary(
                size=int(array_properties["size"]),
                counts=counts,
                raw_counts={s: raw_counts.get(s, 0) for s in PROGRESS_STATES},
                parent_terminal=parent_state.is_terminal,
            )

        if summary is not None and not parent_state.is_terminal:
            state = summary.aggregate_state()
        else:
            state = parent_state

        reason = None
        if state.is_failure:
            reason = job.get("statusReason")
            if not reason and summary is not None:
                reason = f"{summary.count(ExecutionState.FAILED)} of {summary.size} child job(s) failed"
            reason = reason or "job failed"

        return Execution(
            handle=job.get("jobId", handle),
            name=job.get("jobName"),
            state=state,
            raw_status=status,
            started_at=_millis(job.get("startedAt")),
            stopped_at=_millis(job.get("stoppedAt")),
            failure_reason=reason,
            array_summary=summary,
            details={"statusReason": job.get("statusReason")},
        )

    def child_log_streams(self, job_id: str, size: int) -> Dict[int, Optional[str]]:
        """Map each array index to its CloudWatch log stream (None until the child has started)."""
        child_ids = [f"{job_id}:{i}" for i in range(size)]
        streams: Dict[int, Optional[str]] = {i: None for i in range(size)}
        # DescribeJobs takes at most 100 job ids per call
        for start in range(0, len(child_ids), DESCRIBE_JOBS_LIMIT):
            response = aws_call(
                self.client.describe_jobs, "batch", "describe_jobs",
                deadline=self.deadline, identifier=job_id,
                jobs=child_ids[start:start + DESCRIBE_JOBS_LIMIT],
            )
            for child in response.get("jobs") or []:
                index = (child.get("arrayProperties") or {}).get("index")
                if index is None:
                    child_id = child.get("jobId", "")
                    index = int(child_id.rsplit(":", 1)[-1]) if ":" in child_id else None
                if index is None:
                    continue
                container = child.get("container") or {}
                stream = container.get("logStreamName")
                if not stream:
                    attempts = child.get("attempts") or []
                    if attempts:
                        stream = (attempts[-1].get("container") or {}).get("logStreamName")
                streams[int(index)] = stream
        return streams

    def diagnostics(self, job_id: str, job_queue: Optional[str] = None) -> Dict[str, Any]:
        """
        Snapshot used when a job stalls (typically stuck in RUNNABLE): job,
        job queue, compute environments and the first child jobs. Each part
        is collected independently; a failing lookup is recorded, not raised.
        """
        job_queue = job_queue or self.job_queue
        result: Dict[str, Any] = {}

        try:
            job = self._describe_job(job_id)
            result["job"] = {
                "status": job.get("status"),
                "statusReason": job.get("statusReason"),
                "arraySize": (job.get("arrayProperties") or {}).get("size"),
            }
        except Exception as e:
            result["job"] = {"error": str(e)}

        compute_environments: List[str] = []
        try:
            queues = aws_call(
                self.client.describe_job_queues, "batch", "describe_job_queues",
                deadline=self.deadline, jobQueues=[job_queue],
            ).get("jobQueues") or []
            if queues:
                queue = queues[0]
                result["jobQueue"] = {
                    "name": queue.get("jobQueueName"),
                    "state": queue.get("state"),
                    "status": queue.get("status"),
                    "statusReason": queue.get("statusReason"),
                }
                compute_environments = [
                    o.get("computeEnvironment") for o in queue.get("computeEnvironmentOrder") or []
                ]
            else:
                result["jobQueue"] = {"error": f"job queue not found: {job_queue}"}
        except Exception as e:
            result["jobQueue"] = {"error": str(e)}

        result["computeEnvironments"] = []
        for ce_name in compute_environments:
            try:
                envs = aws_call(
                    self.client.describe_compute_environments, "batch", "describe_compute_environments",
                    deadline=self.deadline, computeEnvironments=[ce_name],
                ).get("computeEnvironments") or []
                for ce in envs:
                    resources = ce.get("computeResources") or {}
                    result["computeEnvironments"].append({
                        "name": ce.get("computeEnvironmentName"),
                        "state": ce.get("state"),
                        "status": ce.get("status"),
                        "statusReason": ce.get("statusReason"),
                        "type": resources.get("type"),
                        "maxvCpus": resources.get("maxvCpus"),
                    })
            except Exception as e:
                result["computeEnvironments"].append({"name": ce_name, "error": str(e)})

        try:
            children = aws_call(
                self.client.list_jobs, "batch", "list_jobs",
                deadline=self.deadline, arrayJobId=job_id, maxResults=5,
            ).get("jobSummaryList") or []
            result["childJobs"] = [
                {"jobId": c.get("jobId"), "status": c.get("status"), "statusReason": c.get("statusReason")}
                for c in children
            ]
        except Exception as e:
            result["childJobs"] = {"error": str(e)}

        return result


def _millis(value: Optional[int]) -> Optional[datetime]:
    """Batch reports epoch milliseconds."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
