"""
Load balancer + JWT scenario.

    1. /health answers 200 without credentials
    2. /api/echo without a token is rejected with 401
    3. a client-credentials exchange yields an access token
    4. /api/echo with ``Authorization: Bearer <token>`` answers 200
    5. /api/whoami returns JSON carrying server_id and headers
"""

from pydantic import Field

from fargate_e2e.common.exceptions import TransientError
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.common.retry_utils import with_retry_sync
from fargate_e2e.models.execution_models import ScenarioStage
from fargate_e2e.services.auth_flows import (
    DEFAULT_HTTP_TIMEOUT,
    bearer,
    build_session,
    expect_status,
    fetch_client_credentials_token,
    http_get,
    json_body,
    truncate,
    wait_for_health,
)
from fargate_e2e.services.scenarios.base import Scenario, ScenarioParams, ScenarioRun

logger = get_logger(__name__)


class WebApiParams(ScenarioParams):
    alb_url: str = Field(..., min_length=1)
    token_endpoint: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1, repr=False)
    scope: str = Field(..., min_length=1)
    verify_tls: bool = False


class WebApiJwtScenario(Scenario):
    name = "webapi"
    description = "Call a JWT-protected API behind the load balancer"
    params_model = WebApiParams

    def execute(self, run: ScenarioRun) -> str:
        p: WebApiParams = self.params
        base = p.alb_url.rstrip("/")
        session = self.clients.get("http") or build_session(p.verify_tls)

        logger.info("Waiting for ALB to be healthy...")
        wait_for_health(session, f"{base}/health", run.deadline,
                        interval=self.settings.polling.poll_interval_seconds)

        logger.info("=== Unauthenticated request to /health ===")
        health = http_get(session, f"{base}/health", "health")
        logger.info(f"Response status: {health.status_code}, body: {truncate(health.text.strip(), 200)}")
        expect_status(health, 200, "health")
        run.check("health endpoint open without authentication", True)

        logger.info("=== Unauthenticated request to /api/echo ===")
        rejected = http_get(session, f"{base}/api/echo", "unauthenticated")
        run.require("protected endpoint rejects missing token", 401, rejected.status_code)

        logger.info("=== Getting access token ===")
        exchange = with_retry_sync(
            max_retries=self.settings.polling.transient_retries,
            should_retry=lambda e: isinstance(e, TransientError),
            sleeper=run.deadline.sleep,
        )(fetch_client_credentials_token)
        token = exchange(
            session, p.token_endpoint, p.client_id, p.client_secret, p.scope, timeout=DEFAULT_HTTP_TIMEOUT
        )
        run.check("access token issued", True, {"length": len(token.access_token), "type": token.token_type})
        run.advance(ScenarioStage.SUBMITTED, token_type=token.token_type)

        logger.info("=== Authenticated request to /api/echo ===")
        echo = http_get(session, f"{base}/api/echo", "authenticated", headers=bearer(token.access_token))
        logger.info(f"Response status: {echo.status_code}, body: {truncate(echo.text.strip(), 200)}")
        run.require("protected endpoint accepts valid JWT", 200, echo.status_code)
        run.advance(ScenarioStage.TERMINAL, status=echo.status_code)

        logger.info("=== Verify /api/whoami endpoint ===")
        whoami = expect_status(
            http_get(session, f"{base}/api/whoami", "whoami", headers=bearer(token.access_token)), 200, "whoami"
        )
        body = json_body(whoami, "whoami")
        missing = [k for k in ("server_id", "headers") if k not in body]
        run.require("whoami returns server information", [], missing)
        logger.info(f"Server ID: {body.get('server_id')}")

        run.advance(ScenarioStage.VERIFIED)
        return f"All JWT validation checks passed (server {body.get('server_id')})"
