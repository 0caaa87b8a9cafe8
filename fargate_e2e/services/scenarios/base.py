"""
Scenario Driver: compose executor, correlator, poller and log store into
one end-to-end pass/fail check.

Every scenario walks the same stages:

    BUILDING -> SUBMITTED -> [CORRELATING -> CORRELATED] -> POLLING -> TERMINAL -> VERIFIED

CORRELATING is skipped when the executor returns a handle directly. Any
error raised by a stage propagates unchanged to ScenarioDriver.run(), the
only place that turns it into a Verdict.

Usage:
    driver = ScenarioDriver(settings)
    verdict = driver.run(OneoffScenario(params, settings))
    print(render_report(verdict))
    sys.exit(verdict.exit_code)
"""

import json
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fargate_e2e.common.aws_clients import get_client, get_cloudwatch_client
from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import (
    AssertionFailure,
    BaseE2EError,
    ConfigurationError,
    DeadlineExceeded,
    TerminalFailure,
    TransientError,
)
from fargate_e2e.common.json_utils import dumps, pretty
from fargate_e2e.common.logging_utils import get_logger, log_scenario_event
from fargate_e2e.config import Settings
from fargate_e2e.models.execution_models import Check, Execution, ScenarioStage, Verdict
from fargate_e2e.services.log_store import CloudWatchLogStore, render_records

logger = get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# Parameters
# =============================================================================

class ScenarioParams(BaseModel):
    """Common scenario parameters; subclasses add their own required fields."""
    model_config = ConfigDict(extra="forbid")

    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @classmethod
    def parse(cls, params: Mapping[str, Any]):
        values = {k: v for k, v in params.items() if v is not None}
        try:
            return cls(**values)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'params'}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"invalid parameters for {cls.__name__}: {problems}") from e


def split_csv(value: Any) -> Any:
    """Split "a, b" into ["a", "b"]; lists pass through."""
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def parse_json_input(value: Any) -> Any:
    """Scenario inputs arrive as JSON text from the CLI and as objects from events."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError as e:
            raise ValueError(f"input is not valid JSON: {e}") from e
    return value


# =============================================================================
# Run state
# =============================================================================

class ScenarioRun:
    """Mutable record of one scenario invocation, turned into a Verdict at the end."""

    def __init__(self, scenario: str, deadline: Deadline):
        self.scenario = scenario
        self.deadline = deadline
        self.stage = ScenarioStage.BUILDING
        self.execution: Optional[Execution] = None
        self.checks: List[Check] = []
        self.diagnostics: Dict[str, Any] = {}
        self.log_tail: List[str] = []

    def advance(self, stage: ScenarioStage, **context: Any) -> None:
        self.stage = stage
        log_scenario_event(f"stage_{stage.value.lower()}", scenario=self.scenario, **context)

    def observe(self, execution: Execution) -> Execution:
        self.execution = execution
        return execution

    def check(self, name: str, passed: bool, details: Any = None) -> bool:
        self.checks.append(Check(name=name, passed=passed, details=details))
        if passed:
            logger.info(f"✅ {name}")
        else:
            logger.warning(f"❌ {name}: {details}")
        return passed

    def require(self, name: str, expected: Any, actual: Any, passed: Optional[bool] = None) -> None:
        """Record a check and raise AssertionFailure when it does not hold."""
        ok = (expected == actual) if passed is None else passed
        self.check(name, ok, None if ok else {"expected": expected, "actual": actual})
        if not ok:
            raise AssertionFailure(name, expected=expected, actual=actual)

    def failed_checks(self) -> List[Check]:
        return [c for c in self.checks if not c.passed]

    def add_tail(self, records) -> None:
        self.log_tail = render_records(records)


# =============================================================================
# Scenario contract
# =============================================================================

class Scenario:
    """
    One named end-to-end check.

    Subclasses set ``name``, ``params_model`` and implement execute(), which
    returns a success message or raises. diagnose() runs only after a failure
    and may add diagnostics or a log tail to the run.
    """

    name = "scenario"
    description = ""
    params_model: Type[ScenarioParams] = ScenarioParams

    def __init__(self, params: Any = None, settings: Optional[Settings] = None,
                 clients: Optional[Dict[str, Any]] = None):
        if isinstance(params, ScenarioParams):
            self.params = params
        else:
            self.params = self.params_model.parse(params or {})
        self.settings = settings or Settings.from_env()
        self.clients = dict(clients or {})

    def client(self, service: str):
        """Injected client for ``service``, else the shared cached one."""
        if service not in self.clients:
            self.clients[service] = get_client(service, self.settings.region)
        return self.clients[service]

    @property
    def timeout_seconds(self) -> float:
        return self.params.timeout_seconds or self.settings.polling.scenario_timeout_seconds

    def execute(self, run: ScenarioRun) -> str:
        raise NotImplementedError

    def diagnose(self, run: ScenarioRun, error: BaseException) -> None:
        return None

    def wait_for_records(
        self,
        run: ScenarioRun,
        fetch: Callable[[], T],
        ready: Callable[[T], bool],
        description: str,
    ) -> Optional[T]:
        """
        Re-fetch log records until ``ready`` accepts them. Log delivery lags
        the execution by a few seconds, so an empty fetch is retried within
        the log search budget. Returns the last successful fetch (None if none
        succeeded) whether or not it was accepted.
        """
        attempts = self.settings.logs.find_max_attempts
        interval = self.settings.polling.poll_interval_seconds
        records: Optional[T] = None
        for attempt in range(1, attempts + 1):
            try:
                records = fetch()
            except TransientError as e:
                logger.warning(f"⚠️ Fetching {description} failed: {e}")
            if records is not None and ready(records):
                return records
            if attempt == attempts or run.deadline.expired:
                break
            logger.info(f"Waiting for {description} ({attempt}/{attempts})")
            run.deadline.sleep(interval)
        return records

    def collect_log_tail(self, run: ScenarioRun, store: CloudWatchLogStore, group: str,
                         limit: Optional[int] = None) -> None:
        limit = self.settings.logs.tail_size if limit is None else limit
        logger.info(f"Fetching last {limit} log records from {group}")
        run.add_tail(store.tail(group, limit=limit))


# =============================================================================
# Driver
# =============================================================================

class ScenarioDriver:

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cloudwatch_client=None,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or Settings.from_env()
        self._cloudwatch_client = cloudwatch_client
        self.clock = clock
        self.sleeper = sleeper

    def run(self, scenario: Scenario) -> Verdict:
        """Run one scenario to a Verdict; never raises for scenario failures."""
        logger.info(f"=== Running {scenario.name} ===")
        if scenario.description:
            logger.info(f"Description: {scenario.description}")

        deadline = Deadline(scenario.timeout_seconds, clock=self.clock, sleeper=self.sleeper)
        run = ScenarioRun(scenario.name, deadline)
        start = self.clock()
        error: Optional[BaseException] = None
        message = ""

        try:
            message = scenario.execute(run) or f"{scenario.name} passed"
            failed = run.failed_checks()
            if failed:
                raise AssertionFailure(
                    failed[0].name, expected="all checks pass", actual=[c.name for c in failed]
                )
        except BaseE2EError as e:
            error = e
            message = e.message
        except Exception as e:
            error = e
            message = f"unexpected error: {e}"
            logger.exception(f"Scenario {scenario.name} failed with an unexpected error")
        finally:
            deadline.cancel()

        if error is not None:
            self._absorb_error(run, error)
            try:
                scenario.diagnose(run, error)
            except Exception as e:
                logger.warning(f"⚠️ Collecting diagnostics for {scenario.name} failed: {e}")
                run.diagnostics.setdefault("diagnosticsError", str(e))

        duration = self.clock() - start
        verdict = Verdict(
            scenario=scenario.name,
            passed=error is None,
            message=message,
            stage=run.stage,
            execution=run.execution,
            checks=run.checks,
            diagnostics=run.diagnostics,
            log_tail=run.log_tail,
            error=_error_dict(error),
            duration_seconds=round(duration, 3),
            exit_code=0 if error is None else getattr(error, "exit_code", 1),
        )

        if verdict.passed:
            logger.info(f"✅ {scenario.name}: PASSED ({duration:.1f}s)")
        else:
            logger.error(f"❌ {scenario.name}: FAILED at {run.stage.value} - {message}")
        log_scenario_event(
            "verdict", scenario=scenario.name, passed=verdict.passed,
            stage=run.stage.value, duration_seconds=verdict.duration_seconds,
        )

        self.put_verdict_metric(verdict)
        return verdict

    def _absorb_error(self, run: ScenarioRun, error: BaseException) -> None:
        """Pull the last observed execution out of the error for diagnostics."""
        if isinstance(error, TerminalFailure) and isinstance(error.execution, Execution):
            run.observe(error.execution)
        elif isinstance(error, DeadlineExceeded) and isinstance(error.last_observed, Execution):
            run.observe(error.last_observed)

        if run.execution is not None:
            run.diagnostics.setdefault("lastState", run.execution.raw_status or run.execution.state.value)
            if run.execution.failure_reason:
                run.diagnostics.setdefault("failureReason", run.execution.failure_reason)
            if run.execution.array_summary is not None:
                run.diagnostics.setdefault("arrayStatus", run.execution.array_summary.progress_line())

    # =========================================================================
    # Metrics
    # =========================================================================

    @property
    def cloudwatch_client(self):
        if self._cloudwatch_client is None:
            self._cloudwatch_client = get_cloudwatch_client(self.settings.region)
        return self._cloudwatch_client

    def put_verdict_metric(self, verdict: Verdict) -> None:
        """Publish ScenarioResult / ScenarioDuration; a no-op without a namespace."""
        namespace = self.settings.metric_namespace
        if not namespace:
            return
        try:
            self.cloudwatch_client.put_metric_data(
                Namespace=namespace,
                MetricData=[
                    {
                        "MetricName": "ScenarioResult",
                        "Dimensions": [
                            {"Name": "Scenario", "Value": verdict.scenario},
                            {"Name": "Result", "Value": "SUCCESS" if verdict.passed else "FAILURE"},
                        ],
                        "Value": 1,
                        "Unit": "Count",
                    },
                    {
                        "MetricName": "ScenarioDuration",
                        "Dimensions": [{"Name": "Scenario", "Value": verdict.scenario}],
                        "Value": verdict.duration_seconds,
                        "Unit": "Seconds",
                    },
                ],
            )
            logger.info(f"Metric emitted: {verdict.scenario} = {'SUCCESS' if verdict.passed else 'FAILURE'}")
        except Exception as e:
            logger.warning(f"Failed to emit metric: {e}")


def _error_dict(error: Optional[BaseException]) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    if isinstance(error, BaseE2EError):
        return error.to_dict()
    return {"error": type(error).__name__, "message": str(error), "exitCode": 1}


# =============================================================================
# Report
# =============================================================================

def render_report(verdict: Verdict) -> str:
    """Human-readable verdict: outcome, execution, checks, diagnostics and log tail."""
    icon = "✅" if verdict.passed else "❌"
    lines = [
        f"{icon} {verdict.scenario}: {'PASSED' if verdict.passed else 'FAILED'} ({verdict.duration_seconds:.1f}s)",
        f"   {verdict.message}",
    ]
    if not verdict.passed:
        lines.append(f"   stage: {verdict.stage.value}")
    if verdict.execution is not None:
        lines.append(f"   execution: {verdict.execution.summary()}")
        if verdict.execution.output is not None:
            lines.append("\n--- Execution Output ---")
            lines.append(pretty(verdict.execution.output))
            lines.append("------------------------")

    if verdict.checks:
        lines.append("\nChecks:")
        for check in verdict.checks:
            mark = "✅" if check.passed else "❌"
            suffix = f" - {check.details}" if check.details is not None and not check.passed else ""
            lines.append(f"  {mark} {check.name}{suffix}")

    if verdict.error:
        lines.append("\nError:")
        lines.append(dumps(verdict.error, indent=2))

    if verdict.diagnostics:
        lines.append("\n--- Diagnostics ---")
        lines.append(dumps(verdict.diagnostics, indent=2))
        lines.append("-------------------")

    if verdict.log_tail:
        lines.append(f"\n--- Last {len(verdict.log_tail)} log records ---")
        lines.extend(verdict.log_tail)
        lines.append("------------------------")

    return "\n".join(lines)
