"""
Scenario registry.

Usage:
    scenario = build_scenario("workflow", {"sm_arn": arn, "mode": "event"})
    verdict = ScenarioDriver().run(scenario)
"""

from typing import Any, Dict, Mapping, Optional, Type

from fargate_e2e.common.exceptions import ConfigurationError
from fargate_e2e.config import Settings
from fargate_e2e.services.scenarios.background_queue import BackgroundQueueScenario
from fargate_e2e.services.scenarios.base import Scenario, ScenarioDriver, render_report
from fargate_e2e.services.scenarios.batch_array import BatchArrayScenario
from fargate_e2e.services.scenarios.oneoff import OneoffScenario
from fargate_e2e.services.scenarios.service_connect import ServiceConnectScenario
from fargate_e2e.services.scenarios.webapi_jwt import WebApiJwtScenario
from fargate_e2e.services.scenarios.webapp_cognito import WebAppCognitoScenario
from fargate_e2e.services.scenarios.workflow import WorkflowScenario

SCENARIOS: Dict[str, Type[Scenario]] = {
    cls.name: cls
    for cls in (
        OneoffScenario,
        BackgroundQueueScenario,
        WorkflowScenario,
        BatchArrayScenario,
        WebApiJwtScenario,
        WebAppCognitoScenario,
        ServiceConnectScenario,
    )
}


def build_scenario(
    name: str,
    params: Optional[Mapping[str, Any]] = None,
    settings: Optional[Settings] = None,
    clients: Optional[Dict[str, Any]] = None,
) -> Scenario:
    scenario_cls = SCENARIOS.get(name)
    if scenario_cls is None:
        raise ConfigurationError(f"unknown scenario '{name}' (known: {', '.join(sorted(SCENARIOS))})")
    return scenario_cls(params or {}, settings=settings, clients=clients)


__all__ = ["SCENARIOS", "Scenario", "ScenarioDriver", "build_scenario", "render_report"]
