"""
HTTP authentication handshakes for the load-balancer scenarios.

Two variants:
    - bearer/JWT: exchange client credentials for an access token once and
      send it as ``Authorization: Bearer <token>``
    - session cookie: drive the hosted-UI login as an HTTP state machine
      (no browser) until the load balancer sets its session cookie

Usage:
    session = build_session()
    wait_for_health(session, f"{alb_url}/health", deadline)

    flow = CognitoLoginFlow(session, alb_url, cognito_base_url, username, password)
    cookie_name = flow.run()
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urljoin, urlparse

import requests
import urllib3
from pydantic import BaseModel, ValidationError

from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import AuthFlowError, TransientError
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.services.poller import poll_until

logger = get_logger(__name__)

DEFAULT_HTTP_TIMEOUT = 30
SESSION_COOKIE_PREFIX = "AWSELBAuthSessionCookie"
MAX_REDIRECTS = 10

CSRF_PATTERNS = [
    re.compile(r'name="_csrf"\s+value="([^"]+)"'),
    re.compile(r'value="([^"]+)"\s+name="_csrf"'),
    re.compile(r'<input[^>]*name="_csrf"[^>]*value="([^"]+)"'),
    re.compile(r'<input[^>]*value="([^"]+)"[^>]*name="_csrf"'),
    re.compile(r'''name=['"]_csrf['"][^>]*value=['"]([^'"]+)['"]'''),
    re.compile(r'''value=['"]([^'"]+)['"][^>]*name=['"]_csrf['"]'''),
]


def truncate(text: Optional[str], limit: int) -> str:
    if text is None:
        return ""
    return text if len(text) <= limit else f"{text[:limit]}..."


def build_session(verify_tls: bool = False) -> requests.Session:
    """Session with a cookie jar; TLS verification off for self-signed listener certificates."""
    session = requests.Session()
    session.verify = verify_tls
    if not verify_tls:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return session


def http_get(session: requests.Session, url: str, step: str, timeout: float = DEFAULT_HTTP_TIMEOUT,
             **kwargs: Any) -> requests.Response:
    try:
        return session.get(url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        raise AuthFlowError(step, f"GET {url} failed: {e}") from e


def json_body(response: requests.Response, step: str) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError as e:
        raise AuthFlowError(step, f"response is not JSON: {truncate(response.text, 200)}",
                            response.status_code) from e
    if not isinstance(body, dict):
        raise AuthFlowError(step, f"expected a JSON object, got {type(body).__name__}", response.status_code)
    return body


def expect_status(response: requests.Response, expected: int, step: str) -> requests.Response:
    if response.status_code != expected:
        raise AuthFlowError(
            step,
            f"expected {expected}, got {response.status_code}: {truncate(response.text, 200)}",
            response.status_code,
        )
    return response


# =============================================================================
# Health
# =============================================================================

def wait_for_health(session: requests.Session, url: str, deadline: Deadline,
                    interval: float = 5.0, timeout: float = 5.0) -> requests.Response:
    """Poll ``url`` until it answers 200 or the deadline runs out."""

    def probe() -> Optional[requests.Response]:
        try:
            response = session.get(url, timeout=timeout)
        except requests.RequestException as e:
            logger.info(f"Waiting for health check... ({e})")
            return None
        if response.status_code == 200:
            return response
        logger.info(f"Waiting for health check... (HTTP {response.status_code})")
        return None

    return poll_until(probe, deadline, interval, f"health of {url}")


# =============================================================================
# Bearer / JWT
# =============================================================================

class TokenResponse(BaseModel):
    access_token: str
    token_type: Optional[str] = None
    expires_in: Optional[int] = None


def fetch_client_credentials_token(
    session: requests.Session,
    token_endpoint: str,
    client_id: str,
    client_secret: str,
    scope: str,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> TokenResponse:
    """
    OAuth2 client-credentials exchange (Basic auth, form-encoded body).

    Raises:
        AuthFlowError: non-200 answer, unparsable body or empty token
        TransientError: the endpoint could not be reached
    """
    step = "token_exchange"
    logger.info(f"Requesting token from: {token_endpoint} (client: {client_id}, scope: {scope})")
    try:
        response = session.post(
            token_endpoint,
            data={"grant_type": "client_credentials", "scope": scope},
            auth=(client_id, client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=timeout,
        )
    except (requests.ConnectionError, requests.Timeout) as e:
        raise TransientError("http", step, e) from e

    logger.info(f"Token response status: {response.status_code}")
    expect_status(response, 200, step)
    body = json_body(response, step)
    try:
        token = TokenResponse(**body)
    except ValidationError as e:
        raise AuthFlowError(step, f"unexpected token response: {e}", response.status_code) from e
    if not token.access_token:
        raise AuthFlowError(step, "empty access token in response", response.status_code)

    logger.info(f"Token type: {token.token_type}, expires in: {token.expires_in} seconds")
    return token


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# =============================================================================
# Session cookie (hosted UI login)
# =============================================================================

class LoginState(str, Enum):
    START = "START"
    UNAUTHENTICATED_REDIRECT = "UNAUTHENTICATED_REDIRECT"
    LOGIN_PAGE_FETCHED = "LOGIN_PAGE_FETCHED"
    TOKEN_EXTRACTED = "TOKEN_EXTRACTED"
    CREDENTIALS_POSTED = "CREDENTIALS_POSTED"
    REDIRECT_CHAIN_FOLLOWED = "REDIRECT_CHAIN_FOLLOWED"
    SESSION_COOKIE_VERIFIED = "SESSION_COOKIE_VERIFIED"


def extract_csrf_token(html: str) -> Optional[str]:
    """CSRF value of the hosted login form, trying the common attribute orders."""
    for pattern in CSRF_PATTERNS:
        match = pattern.search(html)
        if match:
            return match.group(1)
    return None


def is_redirect(response: requests.Response) -> bool:
    return response.status_code in (301, 302, 303, 307, 308) and bool(response.headers.get("Location"))


def cookies_for(session: requests.Session, url: str) -> List[Any]:
    """Cookies of the session jar that would be sent to ``url``."""
    host = urlparse(url).hostname or ""
    matched = []
    for cookie in session.cookies:
        domain = (cookie.domain or "").lstrip(".")
        if not domain or host == domain or host.endswith(f".{domain}"):
            matched.append(cookie)
    return matched


class CognitoLoginFlow:
    """
    UNAUTHENTICATED_REDIRECT -> LOGIN_PAGE_FETCHED -> TOKEN_EXTRACTED
    -> CREDENTIALS_POSTED -> REDIRECT_CHAIN_FOLLOWED -> SESSION_COOKIE_VERIFIED

    Every transition reads only the previous response; the redirect chain is
    bounded by ``max_redirects``. A failed transition raises AuthFlowError
    naming the state it could not reach.
    """

    def __init__(
        self,
        session: requests.Session,
        alb_url: str,
        cognito_base_url: str,
        username: str,
        password: str,
        protected_path: str = "/app/profile",
        max_redirects: int = MAX_REDIRECTS,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        cookie_prefix: str = SESSION_COOKIE_PREFIX,
    ):
        self.session = session
        self.alb_url = alb_url.rstrip("/")
        self.cognito_base_url = cognito_base_url.rstrip("/")
        self.username = username
        self.password = password
        self.protected_path = protected_path
        self.max_redirects = max_redirects
        self.timeout = timeout
        self.cookie_prefix = cookie_prefix

        self.state = LoginState.START
        self.history: List[LoginState] = []
        self.auth_url: Optional[str] = None
        self.csrf_token: Optional[str] = None
        self.redirects_followed = 0

    def _advance(self, state: LoginState) -> None:
        logger.info(f"Login flow: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _get(self, url: str, step: LoginState) -> requests.Response:
        return http_get(self.session, url, step.value, timeout=self.timeout, allow_redirects=False)

    # ---- transitions ------------------------------------------------------------

    def request_protected(self) -> str:
        """Protected path without a session must redirect to the hosted login domain."""
        step = LoginState.UNAUTHENTICATED_REDIRECT
        response = self._get(f"{self.alb_url}{self.protected_path}", step)
        if response.status_code != 302:
            raise AuthFlowError(step.value, f"expected 302 redirect, got {response.status_code}", response.status_code)
        location = response.headers.get("Location", "")
        if "amazoncognito.com" not in location:
            raise AuthFlowError(step.value, f"redirect does not point to the login domain: {truncate(location, 100)}")
        self.auth_url = location
        self._advance(step)
        return location

    def fetch_login_page(self) -> str:
        """The authorize URL may bounce once more before serving the form."""
        step = LoginState.LOGIN_PAGE_FETCHED
        response = self._get(self.auth_url, step)
        if is_redirect(response):
            login_url = urljoin(self.auth_url, response.headers["Location"])
            response = http_get(self.session, login_url, step.value, timeout=self.timeout)
        if response.status_code != 200:
            raise AuthFlowError(step.value, f"login page returned {response.status_code}", response.status_code)
        logger.info(f"Login page status: {response.status_code}, body length: {len(response.text)}")
        self._advance(step)
        return response.text

    def extract_token(self, html: str) -> str:
        step = LoginState.TOKEN_EXTRACTED
        token = extract_csrf_token(html)
        if not token:
            logger.debug(f"Login page HTML: {truncate(html, 2000)}")
            raise AuthFlowError(step.value, "failed to extract CSRF token from login page")
        self.csrf_token = token
        self._advance(step)
        return token

    def post_credentials(self) -> requests.Response:
        step = LoginState.CREDENTIALS_POSTED
        parsed = urlparse(self.auth_url)
        form: Dict[str, Any] = {
            "_csrf": self.csrf_token,
            "username": self.username,
            "password": self.password,
            "cognitoAsfData": "",
        }
        for key, values in parse_qs(parsed.query).items():
            if key not in ("response_type", "scope"):
                form[key] = values if len(values) > 1 else values[0]

        login_url = f"{self.cognito_base_url}/login"
        if parsed.query:
            login_url = f"{login_url}?{parsed.query}"
        try:
            response = self.session.post(
                login_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                allow_redirects=False,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthFlowError(step.value, f"login request failed: {e}") from e

        logger.info(f"Login response status: {response.status_code}")
        if not is_redirect(response):
            # hosted UI re-renders the form (200) on bad credentials
            raise AuthFlowError(step.value, "login was not accepted (no redirect)", response.status_code)
        self._advance(step)
        return response

    def follow_redirects(self, response: requests.Response) -> requests.Response:
        step = LoginState.REDIRECT_CHAIN_FOLLOWED
        current_url = response.url
        while is_redirect(response):
            if self.redirects_followed >= self.max_redirects:
                raise AuthFlowError(step.value, f"more than {self.max_redirects} redirects")
            next_url = urljoin(current_url, response.headers["Location"])
            logger.info(f"Following redirect to: {truncate(next_url, 100)}")
            response = self._get(next_url, step)
            current_url = next_url
            self.redirects_followed += 1
        logger.info(f"Final response status: {response.status_code} after {self.redirects_followed} redirects")
        self._advance(step)
        return response

    def verify_session_cookie(self) -> str:
        step = LoginState.SESSION_COOKIE_VERIFIED
        names = [c.name for c in cookies_for(self.session, self.alb_url)]
        logger.info(f"Cookies for load balancer: {names}")
        for name in names:
            if name.startswith(self.cookie_prefix):
                self._advance(step)
                return name
        raise AuthFlowError(step.value, "session cookie not found after authentication")

    def run(self) -> str:
        """Drive the whole handshake; returns the session cookie name."""
        self.request_protected()
        html = self.fetch_login_page()
        self.extract_token(html)
        response = self.post_credentials()
        self.follow_redirects(response)
        return self.verify_session_cookie()


def check_profile(body: Dict[str, Any]) -> List[str]:
    """Problems with an authenticated profile response (empty list when valid)."""
    problems = []
    if not body.get("user_id"):
        problems.append("response missing user_id field")
    if body.get("claims") is None:
        problems.append("response missing claims field")
    if body.get("has_token") is not True:
        problems.append("response indicates no access token was provided")
    return problems
