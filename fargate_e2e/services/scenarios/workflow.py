"""
Workflow scenario: run a state machine in one of three trigger modes.

    direct     StartExecution returns the execution ARN
    event      an EventBridge event is routed to the state machine; the
               execution is found by the correlator
    scheduled  a one-shot cron rule starts the state machine at the next
               whole minute after the delay; the rule is removed on every
               exit path and its removal is verified

Event and scheduled inputs carry the submission's correlation token, so with
``match_token`` the correlator only accepts executions whose input has it.
"""

from typing import Any, List, Optional

from pydantic import Field, field_validator

from fargate_e2e.common.exceptions import AssertionFailure
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.models.execution_models import (
    CorrelationWindow,
    ScenarioStage,
    Submission,
    SubmissionMode,
    utc_now,
)
from fargate_e2e.services.correlator import Correlator
from fargate_e2e.services.executors.eventbridge import EventTriggerExecutor, ScheduledTrigger
from fargate_e2e.services.executors.stepfunctions import StepFunctionsExecutor
from fargate_e2e.services.poller import Waiter, require_success
from fargate_e2e.services.scenarios.base import Scenario, ScenarioParams, ScenarioRun, parse_json_input

logger = get_logger(__name__)

MODE_ALIASES = {"eventbridge": SubmissionMode.EVENT.value}


class WorkflowParams(ScenarioParams):
    sm_arn: str = Field(..., min_length=1)
    input: Any = Field(default_factory=dict)
    mode: SubmissionMode = SubmissionMode.DIRECT
    event_bus: str = "default"
    scheduled_delay: Optional[int] = Field(default=None, ge=1)
    role_arn: Optional[str] = None
    expected_output_keys: List[str] = Field(default_factory=list)

    @field_validator("mode", mode="before")
    @classmethod
    def _mode_alias(cls, v: Any) -> Any:
        if isinstance(v, str):
            return MODE_ALIASES.get(v.lower(), v.lower())
        return v

    @field_validator("input", mode="before")
    @classmethod
    def _parse_input(cls, v: Any) -> Any:
        return parse_json_input(v)


class WorkflowScenario(Scenario):
    name = "workflow"
    description = "Run a Step Functions state machine and verify it succeeds"
    params_model = WorkflowParams

    trigger: Optional[ScheduledTrigger] = None
    # wall clock for schedule times; replaced in tests
    utc_clock = staticmethod(utc_now)

    def execute(self, run: ScenarioRun) -> str:
        p: WorkflowParams = self.params
        sfn = StepFunctionsExecutor(
            client=self.client("stepfunctions"),
            deadline=run.deadline,
            max_retries=self.settings.polling.transient_retries,
        )
        submission = Submission(target=p.sm_arn, payload=p.input, mode=p.mode, submitted_at=self.utc_clock())

        if p.mode is SubmissionMode.DIRECT:
            logger.info(f"Starting direct execution for state machine: {p.sm_arn}")
            handle = sfn.submit(submission)
            run.advance(ScenarioStage.SUBMITTED, handle=handle, mode=p.mode.value)
        elif p.mode is SubmissionMode.EVENT:
            handle = self._run_event(run, sfn, submission)
        else:
            handle = self._run_scheduled(run, sfn, submission)

        run.advance(ScenarioStage.POLLING, handle=handle)
        logger.info("Waiting for execution to complete...")
        execution = run.observe(
            Waiter(sfn, self.settings.polling.not_found_tolerance).wait_for_terminal(
                handle, self.settings.polling.poll_interval_seconds, run.deadline
            )
        )
        run.advance(ScenarioStage.TERMINAL, handle=handle, state=execution.state.value)
        require_success(execution)

        self.verify_output(run, execution.output, p.expected_output_keys)
        run.advance(ScenarioStage.VERIFIED, handle=handle)
        return f"Execution {handle} finished with status {execution.raw_status}"

    # ---- trigger modes ----------------------------------------------------------

    def _run_event(self, run: ScenarioRun, sfn: StepFunctionsExecutor, submission: Submission) -> str:
        corr = self.settings.correlation
        executor = EventTriggerExecutor(client=self.client("events"), sfn=sfn, event_bus=self.params.event_bus,
                                        clock=self.utc_clock)
        executor.submit(submission)
        run.advance(ScenarioStage.SUBMITTED, mode=submission.mode.value, token=submission.correlation_token)
        logger.info("Event sent successfully. Waiting for Step Functions execution to start...")

        run.deadline.sleep(corr.event_initial_delay_seconds)
        window = CorrelationWindow.around(submission.submitted_at, corr.skew_seconds, corr.max_wait_seconds)
        run.advance(ScenarioStage.CORRELATING, window=str(window))
        handle = Correlator(executor, deadline=run.deadline).correlate(
            submission.target,
            window,
            max_attempts=corr.event_max_attempts,
            attempt_interval=corr.event_attempt_interval_seconds,
            token=submission.correlation_token if corr.match_token else None,
        )
        run.advance(ScenarioStage.CORRELATED, handle=handle)
        return handle

    def _run_scheduled(self, run: ScenarioRun, sfn: StepFunctionsExecutor, submission: Submission) -> str:
        corr = self.settings.correlation
        delay = self.params.scheduled_delay or corr.scheduled_delay_minutes
        self.trigger = ScheduledTrigger(
            self.client("events"),
            submission.target,
            submission,
            role_arn=self.params.role_arn,
            delay_minutes=delay,
            clock=self.utc_clock,
        )

        try:
            with self.trigger as trigger:
                run.advance(ScenarioStage.SUBMITTED, mode=submission.mode.value, rule=trigger.rule_name,
                            fire_at=trigger.fire_at.isoformat())
                logger.info(f"Scheduled rule created successfully. Waiting {delay} minute(s) for execution...")
                trigger.wait_for_fire(run.deadline, buffer_seconds=corr.scheduled_buffer_seconds)

                window = CorrelationWindow.for_scheduled(
                    trigger.fire_at, corr.scheduled_buffer_seconds, corr.max_wait_seconds
                )
                run.advance(ScenarioStage.CORRELATING, window=str(window))
                handle = Correlator(sfn, deadline=run.deadline).correlate(
                    submission.target,
                    window,
                    max_attempts=corr.scheduled_max_attempts,
                    attempt_interval=corr.scheduled_attempt_interval_seconds,
                    token=submission.correlation_token if corr.match_token else None,
                )
                run.advance(ScenarioStage.CORRELATED, handle=handle)
        finally:
            self._verify_trigger_removed(run)
        return handle

    def _verify_trigger_removed(self, run: ScenarioRun) -> None:
        trigger = self.trigger
        if trigger is None:
            return
        run.diagnostics["scheduledTrigger"] = trigger.as_dict()
        try:
            removed = not trigger.exists()
        except Exception as e:
            logger.warning(f"⚠️ Could not verify removal of rule {trigger.rule_name}: {e}")
            removed = False
        run.check("temporary schedule rule removed", removed, {"rule": trigger.rule_name})

    # ---- verification -------------------------------------------------------------

    @staticmethod
    def verify_output(run: ScenarioRun, output: Any, expected_keys: List[str]) -> None:
        run.check("execution produced output", output is not None)
        if not expected_keys:
            return
        if not isinstance(output, dict):
            raise AssertionFailure("output is a JSON object", expected="object", actual=type(output).__name__)
        missing = [k for k in expected_keys if k not in output]
        run.require("output has expected keys", [], missing)
