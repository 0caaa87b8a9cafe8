"""
Service-to-service scenario.

The frontend service calls the backend service through the service mesh
name; /api/test?requests=N on the frontend fans N calls out and reports
which backend task answered each. With two backend tasks running, the
calls must reach at least two distinct backends.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field

from fargate_e2e.common.exceptions import ExternalServiceError
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.models.execution_models import ScenarioStage
from fargate_e2e.services.auth_flows import build_session, expect_status, http_get, json_body, wait_for_health
from fargate_e2e.services.executors.ecs_task import EcsServiceProbe
from fargate_e2e.services.poller import poll_until
from fargate_e2e.services.scenarios.base import Scenario, ScenarioParams, ScenarioRun

logger = get_logger(__name__)


class ServiceConnectResult(BaseModel):
    total_requests: int = 0
    success_count: int = 0
    failure_count: int = 0
    unique_backends: int = 0
    distribution: Dict[str, int] = Field(default_factory=dict)
    success: bool = False
    message: str = ""
    frontend_id: Optional[str] = None

    def distribution_lines(self):
        total = self.total_requests or 1
        for backend_id, count in sorted(self.distribution.items()):
            yield f"{backend_id}: {count} requests ({count * 100.0 / total:.1f}%)"


class ServiceConnectParams(ScenarioParams):
    cluster_arn: str = Field(..., min_length=1)
    frontend_service: str = Field(..., min_length=1)
    backend_service: str = Field(..., min_length=1)
    requests: int = Field(default=20, ge=1)
    port: int = Field(default=8080, ge=1, le=65535)
    backend_count: int = Field(default=2, ge=1)
    frontend_count: int = Field(default=1, ge=1)
    min_unique_backends: int = Field(default=2, ge=1)


class ServiceConnectScenario(Scenario):
    name = "service-connect"
    description = "Verify frontend-to-backend calls are spread across backend tasks"
    params_model = ServiceConnectParams

    def execute(self, run: ScenarioRun) -> str:
        p: ServiceConnectParams = self.params
        polling = self.settings.polling
        probe = EcsServiceProbe(
            p.cluster_arn, client=self.client("ecs"), ec2_client=self.client("ec2"), deadline=run.deadline
        )

        logger.info("Waiting for ECS services to be ready...")
        counts = probe.wait_until_running(
            {p.backend_service: p.backend_count, p.frontend_service: p.frontend_count},
            run.deadline,
            poll_interval=polling.poll_interval_seconds,
        )
        run.check("services running", True, counts)

        logger.info("Getting frontend task public IP...")
        frontend_ip = poll_until(
            lambda: probe.public_ip(p.frontend_service),
            run.deadline.child(polling.readiness_timeout_seconds),
            polling.poll_interval_seconds,
            f"public IP of {p.frontend_service}",
        )
        logger.info(f"Frontend public IP: {frontend_ip}")
        frontend_url = f"http://{frontend_ip}:{p.port}"

        session = self.clients.get("http") or build_session()
        logger.info(f"Waiting for frontend to be healthy at {frontend_url}/health...")
        wait_for_health(session, f"{frontend_url}/health", run.deadline, interval=polling.poll_interval_seconds)

        test_url = f"{frontend_url}/api/test?requests={p.requests}"
        logger.info(f"Running Service Connect test: {test_url}")
        run.advance(ScenarioStage.SUBMITTED, url=test_url)
        response = expect_status(http_get(session, test_url, "service_connect", timeout=60), 200, "service_connect")
        try:
            result = ServiceConnectResult(**json_body(response, "service_connect"))
        except ValueError as e:
            raise ExternalServiceError("frontend", f"unexpected /api/test response: {e}") from e
        run.advance(ScenarioStage.TERMINAL, success=result.success)

        run.diagnostics["serviceConnect"] = {
            "totalRequests": result.total_requests,
            "successful": result.success_count,
            "failed": result.failure_count,
            "uniqueBackends": result.unique_backends,
            "distribution": list(result.distribution_lines()),
            "frontendId": result.frontend_id,
            "message": result.message,
        }
        for line in result.distribution_lines():
            logger.info(f"  {line}")

        run.require("frontend reports success", True, result.success)
        run.require(
            f"at least {p.min_unique_backends} unique backends",
            f">= {p.min_unique_backends}",
            result.unique_backends,
            passed=result.unique_backends >= p.min_unique_backends,
        )
        run.advance(ScenarioStage.VERIFIED)
        return f"Service Connect load balancing verified across {result.unique_backends} backends"
