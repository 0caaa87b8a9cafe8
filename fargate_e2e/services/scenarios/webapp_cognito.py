"""
Load balancer + Cognito hosted-UI scenario.

The load balancer authenticates browser sessions itself: an anonymous
request to /app/profile is redirected to the hosted login page, and a
successful login ends with the load balancer setting its session cookie.
The login is driven as an HTTP state machine (CognitoLoginFlow), after which
/app/profile must return the signed-in user's claims.
"""

from typing import Optional

from pydantic import Field

from fargate_e2e.common.exceptions import ConfigurationError
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.models.execution_models import ScenarioStage
from fargate_e2e.services.auth_flows import (
    CognitoLoginFlow,
    build_session,
    check_profile,
    expect_status,
    http_get,
    json_body,
    truncate,
    wait_for_health,
)
from fargate_e2e.services.scenarios.base import Scenario, ScenarioParams, ScenarioRun

logger = get_logger(__name__)

PROFILE_PATH = "/app/profile"


def cognito_base_url(domain: str, region: str) -> str:
    return f"https://{domain}.auth.{region}.amazoncognito.com"


class WebAppParams(ScenarioParams):
    alb_url: str = Field(..., min_length=1)
    cognito_domain: str = Field(..., min_length=1)
    region: Optional[str] = None
    client_id: Optional[str] = None
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, repr=False)
    verify_tls: bool = False


class WebAppCognitoScenario(Scenario):
    name = "webapp"
    description = "Log in through the hosted UI and read the protected profile"
    params_model = WebAppParams

    flow: Optional[CognitoLoginFlow] = None

    def execute(self, run: ScenarioRun) -> str:
        p: WebAppParams = self.params
        region = p.region or self.settings.region
        if not region:
            raise ConfigurationError("region is required to build the login URL", field="region")
        base = p.alb_url.rstrip("/")
        session = self.clients.get("http") or build_session(p.verify_tls)

        logger.info("Waiting for ALB to be healthy...")
        wait_for_health(session, f"{base}/health", run.deadline,
                        interval=self.settings.polling.poll_interval_seconds)
        health = expect_status(http_get(session, f"{base}/health", "health"), 200, "health")
        run.check("health endpoint open without authentication", True, truncate(health.text.strip(), 200))

        self.flow = CognitoLoginFlow(
            session, base, cognito_base_url(p.cognito_domain, region), p.username, p.password,
            protected_path=PROFILE_PATH,
        )
        logger.info("=== Unauthenticated request redirects to login ===")
        location = self.flow.request_protected()
        run.check("protected endpoint redirects to login", True, truncate(location, 100))
        run.advance(ScenarioStage.SUBMITTED, login_url=truncate(location, 100))

        logger.info("=== Authenticate via hosted login ===")
        html = self.flow.fetch_login_page()
        self.flow.extract_token(html)
        response = self.flow.post_credentials()
        self.flow.follow_redirects(response)
        cookie = self.flow.verify_session_cookie()
        run.check("session cookie issued", True, {"cookie": cookie, "redirects": self.flow.redirects_followed})
        run.advance(ScenarioStage.TERMINAL, cookie=cookie)

        logger.info("=== Authenticated request to /app/profile ===")
        profile = expect_status(http_get(session, f"{base}{PROFILE_PATH}", "profile"), 200, "profile")
        body = json_body(profile, "profile")
        logger.info(f"Profile response: {truncate(profile.text.strip(), 500)}")
        run.require("profile carries user claims", [], check_profile(body))
        logger.info(f"User ID: {body.get('user_id')}")

        run.advance(ScenarioStage.VERIFIED)
        return f"Authenticated as {body.get('user_id')} with session cookie {cookie}"

    def diagnose(self, run: ScenarioRun, error: BaseException) -> None:
        if self.flow is not None:
            run.diagnostics["loginFlow"] = {
                "state": self.flow.state.value,
                "completed": [s.value for s in self.flow.history],
                "redirectsFollowed": self.flow.redirects_followed,
            }
