"""
Batch array-job scenario.

Submits one array job, waits until every child is terminal (per-state
counts are logged on every poll), then reads each child's log stream and
checks that the child reported success for its own item:

    input {"items": ["item-A", "item-B"]}  ->  child i prints "Processed item[i]: <items[i]>"

On a deadline the job, its queue, the queue's compute environments and the
first child jobs are described into the verdict's diagnostics; jobs stuck
in RUNNABLE are almost always a compute-environment problem.
"""

from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from fargate_e2e.common.exceptions import AssertionFailure, DeadlineExceeded
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.models.execution_models import LogRecord, ScenarioStage, Submission
from fargate_e2e.services.executors.batch_jobs import BatchArrayExecutor
from fargate_e2e.services.log_store import CloudWatchLogStore, contains_any
from fargate_e2e.services.poller import Waiter, require_success
from fargate_e2e.services.scenarios.base import Scenario, ScenarioParams, ScenarioRun, parse_json_input

logger = get_logger(__name__)

# Batch rejects attemptDurationSeconds below 60
MIN_JOB_TIMEOUT_SECONDS = 60


class BatchArrayParams(ScenarioParams):
    job_queue: str = Field(..., min_length=1)
    job_definition: str = Field(..., min_length=1)
    input: Any = Field(default_factory=lambda: {"items": ["item-A", "item-B"]})
    array_size: int = Field(default=2, ge=2, le=10000)
    log_group: str = "/aws/batch/hello-fargate-batchjobs"

    @field_validator("input", mode="before")
    @classmethod
    def _parse_input(cls, v: Any) -> Any:
        return parse_json_input(v)


def expected_child_message(payload: Any, index: int) -> str:
    """What child ``index`` reports for ``payload``."""
    payload = payload if isinstance(payload, dict) else {}
    items = payload.get("items") or []
    if items:
        if index < len(items):
            return f"Processed item[{index}]: {items[index]}"
        return f"Array index {index} out of range (items: {len(items)})"
    if payload.get("message"):
        return f"Processed: {payload['message']} (index: {index})"
    return f"Processed successfully (array index: {index})"


class BatchArrayScenario(Scenario):
    name = "batch"
    description = "Submit a Batch array job and verify every child's output"
    params_model = BatchArrayParams

    executor: Optional[BatchArrayExecutor] = None
    store: Optional[CloudWatchLogStore] = None
    job_id: Optional[str] = None
    streams: Optional[Dict[int, Optional[str]]] = None

    def execute(self, run: ScenarioRun) -> str:
        p: BatchArrayParams = self.params
        self.executor = BatchArrayExecutor(
            job_queue=p.job_queue,
            client=self.client("batch"),
            deadline=run.deadline,
            job_timeout_seconds=max(MIN_JOB_TIMEOUT_SECONDS, int(self.timeout_seconds)),
        )
        self.store = CloudWatchLogStore(
            client=self.client("logs"), deadline=run.deadline, stream_limit=self.settings.logs.stream_limit
        )

        submission = Submission(target=p.job_definition, payload=p.input, array_size=p.array_size)
        self.job_id = self.executor.submit(submission)
        run.advance(ScenarioStage.SUBMITTED, handle=self.job_id, array_size=p.array_size)

        run.advance(ScenarioStage.POLLING, handle=self.job_id)
        logger.info("Waiting for array job to complete...")
        execution = run.observe(
            Waiter(self.executor, self.settings.polling.not_found_tolerance).wait_for_terminal(
                self.job_id, self.settings.polling.poll_interval_seconds, run.deadline
            )
        )
        run.advance(ScenarioStage.TERMINAL, handle=self.job_id, state=execution.state.value)
        require_success(execution)

        summary = execution.array_summary
        if summary is not None:
            run.require("all children succeeded", p.array_size, summary.raw_counts.get("SUCCEEDED", 0))

        outputs = self.fetch_child_outputs(run)
        self.verify_children(run, outputs, p.input)
        run.advance(ScenarioStage.VERIFIED, handle=self.job_id)
        return f"All {p.array_size} array jobs of {self.job_id} completed successfully"

    def fetch_child_outputs(self, run: ScenarioRun) -> Dict[int, List[LogRecord]]:
        p: BatchArrayParams = self.params
        markers = self.settings.logs.success_markers

        def fetch() -> Dict[int, List[LogRecord]]:
            if not self.streams or not all(self.streams.values()):
                self.streams = self.executor.child_log_streams(self.job_id, p.array_size)
            return self.store.fetch_children(p.log_group, self.streams)

        outputs = self.wait_for_records(
            run,
            fetch=fetch,
            ready=lambda out: CloudWatchLogStore.children_done(out, markers),
            description=f"output of {p.array_size} children in {p.log_group}",
        ) or {}
        tail: List[LogRecord] = []
        for records in outputs.values():
            tail.extend(records)
        run.add_tail(tail[-self.settings.logs.tail_size:])
        return outputs

    def verify_children(self, run: ScenarioRun, outputs: Dict[int, List[LogRecord]], payload: Any) -> None:
        markers = self.settings.logs.success_markers
        failed = []
        for index in range(self.params.array_size):
            records = outputs.get(index) or []
            expected = expected_child_message(payload, index)
            has_message = any(expected in r.message for r in records)
            has_success = any(contains_any(r.message, markers) for r in records)
            passed = run.check(
                f"child {index} output",
                has_message and has_success,
                {"expected": expected, "stream": (self.streams or {}).get(index), "records": len(records)},
            )
            if not passed:
                failed.append(index)
        if failed:
            raise AssertionFailure(
                "child outputs", expected="every child reports its item", actual=f"children {failed} did not"
            )

    def diagnose(self, run: ScenarioRun, error: BaseException) -> None:
        if self.executor is None or self.job_id is None:
            return
        if isinstance(error, DeadlineExceeded):
            logger.info("=== TIMEOUT DIAGNOSTICS ===")
            run.diagnostics["batch"] = self.executor.diagnostics(self.job_id)
        if not run.log_tail and self.store is not None:
            self.collect_log_tail(run, self.store, self.params.log_group)
