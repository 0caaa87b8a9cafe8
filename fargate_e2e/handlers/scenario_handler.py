"""
Scenario runner Lambda handler.

Event format:
- {"scenario": "oneoff", "params": {...}}                  - Run single scenario
- {"scenarios": [{"name": "sqs", "params": {...}}, "..."]}  - Run multiple scenarios
- {"params": {"oneoff": {...}, "sqs": {...}}}              - Run every scenario named in params

Each result is the scenario's Verdict as JSON. The response is 200 when every
scenario passed and 500 otherwise.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fargate_e2e.common.exceptions import ConfigurationError
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.config import Settings
from fargate_e2e.models.execution_models import Verdict
from fargate_e2e.services.scenarios import SCENARIOS, ScenarioDriver, build_scenario

logger = get_logger(__name__)


def config_verdict(name: str, error: ConfigurationError) -> Verdict:
    """Verdict for a scenario that could not be built from its parameters."""
    return Verdict(
        scenario=name,
        passed=False,
        message=error.message,
        error=error.to_dict(),
        exit_code=error.exit_code,
    )


def scenarios_from_event(event: Dict[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
    """Normalize the three event shapes into (name, params) pairs."""
    shared = event.get("params") or {}
    if "scenario" in event:
        return [(event["scenario"], shared)]
    if "scenarios" in event:
        selected = []
        for entry in event["scenarios"]:
            if isinstance(entry, str):
                selected.append((entry, shared.get(entry) or {}))
            else:
                selected.append((entry.get("name", ""), entry.get("params") or {}))
        return selected
    # Default: every registered scenario that has parameters
    return [(name, shared[name]) for name in SCENARIOS if name in shared]


def run_scenario(
    name: str,
    params: Dict[str, Any],
    settings: Settings,
    driver: ScenarioDriver,
    clients: Optional[Dict[str, Any]] = None,
) -> Verdict:
    try:
        scenario = build_scenario(name, params, settings=settings, clients=clients)
    except ConfigurationError as e:
        logger.error(f"❌ {name}: {e.message}")
        return config_verdict(name, e)
    return driver.run(scenario)


def put_success_rate_metric(driver: ScenarioDriver, success_rate: float) -> None:
    namespace = driver.settings.metric_namespace
    if not namespace:
        return
    try:
        driver.cloudwatch_client.put_metric_data(
            Namespace=namespace,
            MetricData=[
                {
                    "MetricName": "ScenarioSuccessRate",
                    "Value": success_rate,
                    "Unit": "Percent",
                    "Timestamp": datetime.now(timezone.utc),
                }
            ],
        )
    except Exception as e:
        logger.warning(f"Failed to emit success rate metric: {e}")


def lambda_handler(event: dict, context: Any, driver: Optional[ScenarioDriver] = None,
                   clients: Optional[Dict[str, Any]] = None) -> dict:
    logger.info("=== Scenario Runner Starting ===")
    logger.info(f"Event: {json.dumps(event, default=str)}")

    settings = driver.settings if driver is not None else Settings.from_env()
    driver = driver or ScenarioDriver(settings)
    selected = scenarios_from_event(event or {})
    logger.info(f"Scenarios to run: {[name for name, _ in selected]}")

    results = []
    passed_count = 0
    failed_count = 0

    for name, params in selected:
        verdict = run_scenario(name, params, settings, driver, clients)
        results.append(verdict.model_dump(mode="json"))
        if verdict.passed:
            passed_count += 1
        else:
            failed_count += 1

    total = len(results)
    success_rate = (passed_count / total * 100) if total > 0 else 0

    summary = {
        "total_scenarios": total,
        "passed": passed_count,
        "failed": failed_count,
        "success_rate": f"{success_rate:.1f}%",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    logger.info("=== Scenario Runner Complete ===")
    logger.info(f"Summary: {passed_count}/{total} passed ({success_rate:.1f}%)")

    if total:
        put_success_rate_metric(driver, success_rate)

    return {
        "statusCode": 200 if failed_count == 0 else 500,
        "body": {
            "summary": summary,
            "results": results,
        },
    }
