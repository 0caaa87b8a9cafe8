"""
One-off task scenario: run a task definition once on Fargate, wait for it to
stop, then rebuild the JSON document the task printed to its log stream.

The task reads ``TASK_INPUT`` ({"message": ..., "data": {...}}) and prints

    --- Task Output ---
    {"status": "success", "message": "Processed: <message>", "input": <data>}

one line per log event.
"""

from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from fargate_e2e.common.exceptions import AssertionFailure
from fargate_e2e.models.execution_models import ScenarioStage, Submission
from fargate_e2e.services.executors.ecs_task import EcsTaskExecutor
from fargate_e2e.services.log_store import CloudWatchLogStore, reconstruct_json
from fargate_e2e.services.poller import Waiter, require_success
from fargate_e2e.services.scenarios.base import (
    Scenario,
    ScenarioParams,
    ScenarioRun,
    parse_json_input,
    split_csv,
)

OUTPUT_MARKER = "--- Task Output ---"


class OneoffParams(ScenarioParams):
    cluster_arn: str = Field(..., min_length=1)
    task_definition_arn: str = Field(..., min_length=1)
    subnet_ids: List[str] = Field(..., min_length=1)
    security_group_id: Optional[str] = None
    container_name: str = "hello-fargate-oneoff-app-container"
    input: Any = Field(default_factory=dict)
    log_group: str = "/ecs/hello-fargate-oneoff-task"
    log_stream_prefix: str = "ecs"

    @field_validator("subnet_ids", mode="before")
    @classmethod
    def _split_subnets(cls, v: Any) -> Any:
        return split_csv(v)

    @field_validator("input", mode="before")
    @classmethod
    def _parse_input(cls, v: Any) -> Any:
        return parse_json_input(v)


def expected_message(payload: Any) -> str:
    message = payload.get("message") if isinstance(payload, dict) else None
    if not message:
        return "Processed successfully (no message provided)"
    return f"Processed: {message}"


class OneoffScenario(Scenario):
    name = "oneoff"
    description = "Run a one-off Fargate task and verify its printed output"
    params_model = OneoffParams

    store: Optional[CloudWatchLogStore] = None
    stream_name: Optional[str] = None

    def execute(self, run: ScenarioRun) -> str:
        p: OneoffParams = self.params
        executor = EcsTaskExecutor(
            cluster=p.cluster_arn,
            container_name=p.container_name,
            subnets=p.subnet_ids,
            security_group=p.security_group_id,
            log_stream_prefix=p.log_stream_prefix,
            client=self.client("ecs"),
            deadline=run.deadline,
            max_retries=self.settings.polling.transient_retries,
        )
        self.store = CloudWatchLogStore(
            client=self.client("logs"), deadline=run.deadline, stream_limit=self.settings.logs.stream_limit
        )

        submission = Submission(target=p.task_definition_arn, payload=p.input)
        handle = executor.submit(submission)
        run.advance(ScenarioStage.SUBMITTED, handle=handle)

        run.advance(ScenarioStage.POLLING, handle=handle)
        execution = run.observe(
            Waiter(executor, self.settings.polling.not_found_tolerance).wait_for_terminal(
                handle, self.settings.polling.poll_interval_seconds, run.deadline
            )
        )
        run.advance(ScenarioStage.TERMINAL, handle=handle, state=execution.state.value)
        self.stream_name = executor.log_stream_name(handle)
        require_success(execution)
        run.check("task exited with code 0", execution.exit_code == 0, {"exitCode": execution.exit_code})

        records = self.wait_for_records(
            run,
            fetch=lambda: list(self.store.fetch_output(p.log_group, stream_prefix=self.stream_name)),
            ready=lambda rs: reconstruct_json(rs, OUTPUT_MARKER) is not None,
            description=f"task output in {p.log_group}/{self.stream_name}",
        ) or []
        run.add_tail(records)
        output = reconstruct_json(records, OUTPUT_MARKER)
        if output is None:
            raise AssertionFailure("task output present", expected=OUTPUT_MARKER, actual=None,
                                   details=f"{len(records)} record(s) in {self.stream_name}")

        self.verify_output(run, output, p.input)
        run.advance(ScenarioStage.VERIFIED, handle=handle)
        return f"Task {handle} processed its input: {output.get('message')}"

    @staticmethod
    def verify_output(run: ScenarioRun, output: Dict[str, Any], payload: Any) -> None:
        run.require("output status", "success", output.get("status"))
        run.require("output message", expected_message(payload), output.get("message"))
        data = payload.get("data") if isinstance(payload, dict) else None
        if data:
            run.require("output echoes input data", data, output.get("input"))

    def diagnose(self, run: ScenarioRun, error: BaseException) -> None:
        if self.store is None or self.stream_name is None or run.log_tail:
            return
        records = list(self.store.fetch_output(self.params.log_group, stream_prefix=self.stream_name))
        run.add_tail(records[-self.settings.logs.tail_size:])
