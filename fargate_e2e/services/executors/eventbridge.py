"""
EventBridge-triggered executions.

EventTriggerExecutor emits one event that a rule routes to the state machine;
ScheduledTrigger registers a one-shot cron rule that starts it later. Neither
gets an execution handle back, so both rely on the correlator and delegate
describe/list to the Step Functions executor.

Usage:
    with ScheduledTrigger(events, state_machine_arn, submission) as trigger:
        trigger.wait_for_fire(deadline)
        handle = correlator.correlate(...)
    assert not trigger.exists()
"""

import json
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from fargate_e2e.common.aws_clients import get_events_client
from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import ConfigurationError, DeadlineExceeded, SubmissionError
from fargate_e2e.common.logging_utils import get_logger, log_external_service_call
from fargate_e2e.models.execution_models import Execution, Submission, utc_now
from fargate_e2e.services.executors.base import aws_call
from fargate_e2e.services.executors.stepfunctions import StepFunctionsExecutor

logger = get_logger(__name__)

EVENT_SOURCE = "fargate.workflow.test"
EVENT_DETAIL_TYPE = "Test Trigger"
ROLE_RULE_PREFIX = "fargate-workflow-schedule-rule"
TARGET_ID = "1"


def tokenized_input(submission: Submission) -> Any:
    """
    The payload as the workflow should receive it, carrying the correlation token.

    Strings that are not JSON objects are wrapped as ``{"rawInput": ...}``.
    """
    payload = submission.payload
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            payload = {"rawInput": submission.payload}
    if isinstance(payload, dict):
        return {**payload, "correlationToken": submission.correlation_token}
    return {"rawInput": payload, "correlationToken": submission.correlation_token}


class EventTriggerExecutor:
    """Starts a workflow indirectly by publishing an event."""

    name = "eventbridge"

    def __init__(self, client=None, sfn: Optional[StepFunctionsExecutor] = None,
                 event_bus: str = "default", source: str = EVENT_SOURCE,
                 detail_type: str = EVENT_DETAIL_TYPE, clock: Callable[[], datetime] = utc_now):
        self.client = client or get_events_client()
        self.sfn = sfn or StepFunctionsExecutor()
        self.event_bus = event_bus
        self.source = source
        self.detail_type = detail_type
        self.clock = clock

    @log_external_service_call("events", "put_events")
    def submit(self, submission: Submission) -> Optional[str]:
        detail = {
            "stateMachineArn": submission.target,
            "timestamp": self.clock().strftime("%Y-%m-%dT%H:%M:%SZ"),
            "testInput": tokenized_input(submission),
        }
        logger.info(f"Sending test event to EventBridge (bus: {self.event_bus})")
        response = aws_call(
            self.client.put_events, "events", "put_events",
            submitting=True,
            identifier=submission.target,
            Entries=[{
                "Source": self.source,
                "DetailType": self.detail_type,
                "Detail": json.dumps(detail),
                "EventBusName": self.event_bus,
            }],
        )
        if response.get("FailedEntryCount", 0) > 0:
            entries = response.get("Entries") or [{}]
            raise SubmissionError(submission.target, entries[0].get("ErrorMessage") or "event rejected")

        # the rule starts the execution asynchronously; correlation required
        return None

    def describe(self, handle: str) -> Execution:
        return self.sfn.describe(handle)

    def list_recent(self, target: str) -> List[Execution]:
        return self.sfn.list_recent(target)

    def execution_mentions(self, handle: str, token: str) -> bool:
        return self.sfn.execution_mentions(handle, token)


def cron_for(moment: datetime) -> str:
    """EventBridge one-shot cron: cron(Minutes Hours Day-of-month Month Day-of-week Year), UTC."""
    moment = moment.astimezone(timezone.utc)
    return f"cron({moment.minute} {moment.hour} {moment.day} {moment.month} ? {moment.year})"


def next_minute_after(moment: datetime, delay_minutes: int) -> datetime:
    """First whole minute at or after ``moment + delay``."""
    target = moment + timedelta(minutes=delay_minutes)
    epoch = target.timestamp()
    return datetime.fromtimestamp(math.ceil(epoch / 60) * 60, tz=timezone.utc)


class ScheduledTrigger:
    """
    One-shot schedule rule targeting a state machine, scoped to a ``with`` block.

    The rule and its target are removed on every exit path, including a
    failure half-way through registration.
    """

    def __init__(
        self,
        client,
        state_machine_arn: str,
        submission: Submission,
        role_arn: Optional[str] = None,
        role_rule_prefix: str = ROLE_RULE_PREFIX,
        delay_minutes: int = 1,
        clock: Callable[[], datetime] = utc_now,
        rule_name: Optional[str] = None,
    ):
        self.client = client or get_events_client()
        self.state_machine_arn = state_machine_arn
        self.submission = submission
        self.role_arn = role_arn
        self.role_rule_prefix = role_rule_prefix
        self.clock = clock
        now = clock()
        self.fire_at = next_minute_after(now, delay_minutes)
        self.rule_name = rule_name or f"test-scheduled-trigger-{int(now.timestamp())}"
        self.rule_arn: Optional[str] = None
        self.cleanup_error: Optional[Exception] = None
        self._registered = False

    # ---- scoped acquisition -------------------------------------------------

    def __enter__(self) -> "ScheduledTrigger":
        self.register()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False

    def register(self) -> None:
        expression = cron_for(self.fire_at)
        logger.info(f"Creating scheduled rule '{self.rule_name}' to trigger at {self.fire_at.strftime('%H:%M:%S')} UTC")
        response = aws_call(
            self.client.put_rule, "events", "put_rule",
            submitting=True, identifier=self.rule_name,
            Name=self.rule_name,
            Description=f"Temporary test rule to trigger Step Functions at {self.fire_at.isoformat()}",
            ScheduleExpression=expression,
            State="ENABLED",
        )
        self._registered = True
        self.rule_arn = response.get("RuleArn")

        try:
            role_arn = self.role_arn or self._discover_role_arn()
            target_input = json.dumps(tokenized_input(self.submission))
            targets = aws_call(
                self.client.put_targets, "events", "put_targets",
                submitting=True, identifier=self.rule_name,
                Rule=self.rule_name,
                Targets=[{
                    "Id": TARGET_ID,
                    "Arn": self.state_machine_arn,
                    "RoleArn": role_arn,
                    "Input": target_input,
                }],
            )
            if targets.get("FailedEntryCount", 0) > 0:
                failed = targets.get("FailedEntries") or [{}]
                raise SubmissionError(self.rule_name, failed[0].get("ErrorMessage") or "target rejected")
        except Exception:
            self.release()
            raise

        logger.info(f"Scheduled rule created: {self.rule_arn}")

    def _discover_role_arn(self) -> str:
        """Reuse the invoke role of the stack's own schedule rule."""
        rules = aws_call(
            self.client.list_rules, "events", "list_rules",
            NamePrefix=self.role_rule_prefix,
        ).get("Rules") or []
        if not rules:
            raise ConfigurationError(
                f"no existing rule with prefix '{self.role_rule_prefix}' to take the IAM role from",
                field="role_arn"
            )
        targets = aws_call(
            self.client.list_targets_by_rule, "events", "list_targets_by_rule",
            Rule=rules[0]["Name"],
        ).get("Targets") or []
        if not targets or not targets[0].get("RoleArn"):
            raise ConfigurationError(f"rule '{rules[0]['Name']}' has no target role", field="role_arn")
        return targets[0]["RoleArn"]

    def release(self) -> None:
        if not self._registered:
            return
        logger.info(f"Cleaning up temporary rule '{self.rule_name}'")
        try:
            aws_call(self.client.remove_targets, "events", "remove_targets",
                     Rule=self.rule_name, Ids=[TARGET_ID])
        except Exception as e:
            # the rule may have no target if registration failed half-way
            logger.debug(f"remove_targets on {self.rule_name}: {e}")
        try:
            aws_call(self.client.delete_rule, "events", "delete_rule", Name=self.rule_name)
        except Exception as e:
            self.cleanup_error = e
            logger.warning(f"⚠️ Failed to delete temporary rule {self.rule_name}: {e}")
            return
        self._registered = False
        logger.info("Temporary rule cleaned up")

    def exists(self) -> bool:
        rules = aws_call(
            self.client.list_rules, "events", "list_rules",
            NamePrefix=self.rule_name,
        ).get("Rules") or []
        return any(r.get("Name") == self.rule_name for r in rules)

    # ---- waiting --------------------------------------------------------------

    def wait_for_fire(self, deadline: Deadline, buffer_seconds: float = 30.0,
                      countdown_interval: float = 10.0) -> None:
        """Sleep until the fire time plus ``buffer_seconds``, logging a countdown."""
        wake_at = self.fire_at + timedelta(seconds=buffer_seconds)
        logger.info(f"Waiting {max(0, (wake_at - self.clock()).total_seconds()):.0f}s for scheduled execution")
        while True:
            remaining = (wake_at - self.clock()).total_seconds()
            if remaining <= 0:
                logger.info("Wait time complete, checking for execution")
                return
            if deadline.expired:
                raise DeadlineExceeded("scheduled trigger to fire", deadline.elapsed)
            deadline.sleep(min(countdown_interval, remaining))
            left = (wake_at - self.clock()).total_seconds()
            if left > 0:
                logger.info(f"Still waiting... {left:.0f}s remaining")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule_name,
            "fireAt": self.fire_at.isoformat(),
            "expression": cron_for(self.fire_at),
            "cleanupError": str(self.cleanup_error) if self.cleanup_error else None,
        }
