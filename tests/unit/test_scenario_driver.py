"""
Scenario Driver tests
Production code: services/scenarios/base.py (ScenarioDriver, ScenarioRun, render_report)

The driver is the only place that turns errors into verdicts; these tests
cover each error kind, diagnostics collection, deadline cancellation and
metric publication.
"""
from unittest.mock import MagicMock

import pytest

from fargate_e2e.common.exceptions import DeadlineExceeded, TerminalFailure
from fargate_e2e.config import Settings
from fargate_e2e.models.execution_models import Execution, ExecutionState, ScenarioStage
from fargate_e2e.services.scenarios.base import Scenario, ScenarioDriver, ScenarioRun, render_report


class ScriptedScenario(Scenario):
    """Runs ``script(run)`` as its body."""

    name = "scripted"

    def __init__(self, script, settings, diagnose=None):
        super().__init__({}, settings=settings)
        self.script = script
        self._diagnose = diagnose
        self.run_seen = None

    def execute(self, run: ScenarioRun) -> str:
        self.run_seen = run
        return self.script(run)

    def diagnose(self, run, error):
        if self._diagnose is not None:
            self._diagnose(run, error)


@pytest.fixture
def driver(clock, settings):
    return ScenarioDriver(settings, cloudwatch_client=MagicMock(), clock=clock.monotonic, sleeper=clock.sleep)


class TestScenarioDriver:

    def test_passing_scenario(self, driver, settings, clock):
        def script(run):
            run.advance(ScenarioStage.SUBMITTED, handle="h")
            clock.sleep(3)
            run.check("something held", True)
            run.advance(ScenarioStage.VERIFIED)
            return "all good"

        verdict = driver.run(ScriptedScenario(script, settings))

        assert verdict.passed
        assert verdict.exit_code == 0
        assert verdict.message == "all good"
        assert verdict.stage is ScenarioStage.VERIFIED
        assert verdict.duration_seconds == 3.0
        assert verdict.error is None

    def test_terminal_failure_keeps_execution_and_reason(self, driver, settings):
        failed = Execution(handle="arn:exec", state=ExecutionState.FAILED, raw_status="FAILED",
                           failure_reason="States.TaskFailed: boom")

        def script(run):
            run.advance(ScenarioStage.TERMINAL)
            raise TerminalFailure("arn:exec", "FAILED", "States.TaskFailed: boom", execution=failed)

        verdict = driver.run(ScriptedScenario(script, settings))

        assert not verdict.passed
        assert verdict.exit_code == 1
        assert verdict.stage is ScenarioStage.TERMINAL
        assert verdict.execution == failed
        assert verdict.diagnostics["failureReason"] == "States.TaskFailed: boom"
        assert verdict.error["error"] == "TerminalFailure"

    def test_deadline_keeps_last_observed(self, driver, settings):
        running = Execution(handle="job", state=ExecutionState.RUNNING, raw_status="RUNNABLE")

        def script(run):
            raise DeadlineExceeded("execution job", 300.0, last_observed=running)

        verdict = driver.run(ScriptedScenario(script, settings))

        assert verdict.diagnostics["lastState"] == "RUNNABLE"
        assert verdict.error["waitedSeconds"] == 300.0

    def test_failed_check_without_raise_fails_the_verdict(self, driver, settings):
        def script(run):
            run.check("first", True)
            run.check("second", False, {"why": "mismatch"})
            return "looked fine"

        verdict = driver.run(ScriptedScenario(script, settings))

        assert not verdict.passed
        assert verdict.error["error"] == "AssertionFailure"
        assert [c.passed for c in verdict.checks] == [True, False]

    def test_require_raises_with_expected_and_actual(self, driver, settings):
        def script(run):
            run.require("status", "success", "error")

        verdict = driver.run(ScriptedScenario(script, settings))

        assert verdict.error["expected"] == "success"
        assert verdict.error["actual"] == "error"

    def test_unexpected_exception_becomes_a_verdict(self, driver, settings):
        def script(run):
            raise RuntimeError("kaboom")

        verdict = driver.run(ScriptedScenario(script, settings))

        assert not verdict.passed
        assert verdict.exit_code == 1
        assert verdict.error == {"error": "RuntimeError", "message": "kaboom", "exitCode": 1}

    def test_diagnose_runs_only_on_failure_and_its_errors_are_recorded(self, driver, settings):
        calls = []

        def diagnose(run, error):
            calls.append(type(error).__name__)
            raise RuntimeError("describe failed")

        passing = driver.run(ScriptedScenario(lambda run: "ok", settings, diagnose))
        failing = driver.run(ScriptedScenario(lambda run: run.require("x", 1, 2), settings, diagnose))

        assert passing.passed
        assert calls == ["AssertionFailure"]
        assert failing.diagnostics["diagnosticsError"] == "describe failed"

    def test_deadline_is_cancelled_when_the_run_ends(self, driver, settings):
        scenario = ScriptedScenario(lambda run: "ok", settings)
        driver.run(scenario)

        assert scenario.run_seen.deadline.cancelled

    def test_metrics_published_with_namespace(self, clock):
        cloudwatch = MagicMock()
        driver = ScenarioDriver(Settings(metric_namespace="E2E"), cloudwatch_client=cloudwatch,
                                clock=clock.monotonic, sleeper=clock.sleep)

        driver.run(ScriptedScenario(lambda run: "ok", Settings()))

        kwargs = cloudwatch.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == "E2E"
        result, duration = kwargs["MetricData"]
        assert result["MetricName"] == "ScenarioResult"
        assert {"Name": "Result", "Value": "SUCCESS"} in result["Dimensions"]
        assert duration["Unit"] == "Seconds"

    def test_metric_failure_is_not_fatal(self, clock):
        cloudwatch = MagicMock()
        cloudwatch.put_metric_data.side_effect = RuntimeError("no permission")
        driver = ScenarioDriver(Settings(metric_namespace="E2E"), cloudwatch_client=cloudwatch,
                                clock=clock.monotonic, sleeper=clock.sleep)

        assert driver.run(ScriptedScenario(lambda run: "ok", Settings())).passed

    def test_no_metrics_without_namespace(self, driver, settings):
        driver.run(ScriptedScenario(lambda run: "ok", settings))
        driver.cloudwatch_client.put_metric_data.assert_not_called()


class TestRenderReport:

    def test_failed_report_has_every_section(self, driver, settings):
        failed = Execution(handle="arn:exec", state=ExecutionState.FAILED, raw_status="FAILED",
                           failure_reason="exit code 1")

        def script(run):
            run.observe(failed)
            run.check("task exited with code 0", False, {"exitCode": 1})
            run.log_tail = ["line one", "line two"]
            run.diagnostics["extra"] = "value"
            return "done"

        report = render_report(driver.run(ScriptedScenario(script, settings)))

        assert report.startswith("❌ scripted: FAILED")
        assert "stage: BUILDING" in report
        assert "execution: arn:exec [FAILED] reason: exit code 1" in report
        assert "❌ task exited with code 0 - {'exitCode': 1}" in report
        assert "--- Diagnostics ---" in report
        assert "--- Last 2 log records ---" in report
        assert report.rstrip().endswith("------------------------")

    def test_passed_report_shows_output(self, driver, settings):
        succeeded = Execution(handle="arn:exec", state=ExecutionState.SUCCEEDED, output={"result": 42})

        def script(run):
            run.observe(succeeded)
            return "fine"

        report = render_report(driver.run(ScriptedScenario(script, settings)))

        assert report.startswith("✅ scripted: PASSED")
        assert "--- Execution Output ---" in report
        assert '"result": 42' in report
        assert "Error:" not in report
