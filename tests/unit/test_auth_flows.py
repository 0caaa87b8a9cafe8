"""
HTTP auth flow tests
Production code: services/auth_flows.py

The load balancer and hosted login are scripted with the doubles in
http_fakes.py, so cookie handling goes through a real cookie jar.
"""
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from fargate_e2e.common.exceptions import AuthFlowError, DeadlineExceeded, TransientError

from http_fakes import ALB, COGNITO, LOGIN_HTML, FakeSession, login_session, make_response


class TestCsrfExtraction:

    @pytest.mark.parametrize("html,expected", [
        ('<input name="_csrf" value="a1"/>', "a1"),
        ('<input value="b2" name="_csrf"/>', "b2"),
        ('<input type="hidden" name="_csrf" id="x" value="c3">', "c3"),
        ("<input name='_csrf' value='d4'>", "d4"),
        ('<input name="username">', None),
    ])
    def test_extract_csrf_token(self, html, expected):
        from fargate_e2e.services.auth_flows import extract_csrf_token

        assert extract_csrf_token(html) == expected


class TestCognitoLoginFlow:

    def _flow(self, session, **kwargs):
        from fargate_e2e.services.auth_flows import CognitoLoginFlow

        return CognitoLoginFlow(session, ALB, COGNITO, "alice", "s3cret", **kwargs)

    def test_full_login(self):
        from fargate_e2e.services.auth_flows import LoginState

        session = login_session()
        flow = self._flow(session)

        assert flow.run() == "AWSELBAuthSessionCookie-0"
        assert flow.state is LoginState.SESSION_COOKIE_VERIFIED
        assert flow.history == [
            LoginState.UNAUTHENTICATED_REDIRECT,
            LoginState.LOGIN_PAGE_FETCHED,
            LoginState.TOKEN_EXTRACTED,
            LoginState.CREDENTIALS_POSTED,
            LoginState.REDIRECT_CHAIN_FOLLOWED,
            LoginState.SESSION_COOKIE_VERIFIED,
        ]
        assert flow.redirects_followed == 2

        method, url, kwargs = next(r for r in session.requests if r[0] == "POST")
        assert kwargs["data"]["_csrf"] == "csrf-token-1"
        assert kwargs["data"]["username"] == "alice"
        assert kwargs["data"]["client_id"] == "abc"
        assert "response_type" not in kwargs["data"]
        assert parse_qs(urlparse(url).query)["state"] == ["xyz"]

    def test_protected_path_must_redirect_to_login(self):
        session = FakeSession().add("GET", f"{ALB}/app/profile", make_response(200, "{}"))
        flow = self._flow(session)

        with pytest.raises(AuthFlowError) as exc_info:
            flow.run()
        assert exc_info.value.step == "UNAUTHENTICATED_REDIRECT"
        assert flow.history == []

    def test_rejected_credentials(self):
        from fargate_e2e.services.auth_flows import LoginState

        flow = self._flow(login_session(post_response=make_response(200, LOGIN_HTML)))

        with pytest.raises(AuthFlowError) as exc_info:
            flow.run()
        assert exc_info.value.step == "CREDENTIALS_POSTED"
        assert flow.state is LoginState.TOKEN_EXTRACTED

    def test_redirect_chain_is_bounded(self):
        session = login_session()
        loop = f"{ALB}/oauth2/idpresponse?code=c0de&state=xyz"
        session.add("GET", loop, make_response(302, headers={"Location": loop}))
        flow = self._flow(session, max_redirects=3)

        with pytest.raises(AuthFlowError) as exc_info:
            flow.run()
        assert exc_info.value.step == "REDIRECT_CHAIN_FOLLOWED"
        assert flow.redirects_followed == 3

    def test_missing_session_cookie(self):
        session = login_session()
        session.add("GET", f"{ALB}/oauth2/idpresponse?code=c0de&state=xyz", make_response(200, "ok"))

        with pytest.raises(AuthFlowError) as exc_info:
            self._flow(session).run()
        assert exc_info.value.step == "SESSION_COOKIE_VERIFIED"

    def test_cookie_for_other_domain_does_not_count(self):
        from fargate_e2e.services.auth_flows import cookies_for

        session = FakeSession()
        session.cookies.set("AWSELBAuthSessionCookie-0", "x", domain="other.example.com")
        session.cookies.set("keep", "y", domain=".example.com")

        assert [c.name for c in cookies_for(session, ALB)] == ["keep"]


class TestClientCredentials:

    def test_token_exchange(self):
        from fargate_e2e.services.auth_flows import fetch_client_credentials_token

        session = FakeSession().add("POST", "https://auth.example.com/oauth2/token", make_response(
            200, {"access_token": "jwt", "token_type": "Bearer", "expires_in": 3600}
        ))
        token = fetch_client_credentials_token(session, "https://auth.example.com/oauth2/token",
                                               "client", "secret", "api/read")

        assert token.access_token == "jwt"
        _, _, kwargs = session.requests[0]
        assert kwargs["auth"] == ("client", "secret")
        assert kwargs["data"] == {"grant_type": "client_credentials", "scope": "api/read"}

    @pytest.mark.parametrize("response", [
        make_response(400, {"error": "invalid_client"}),
        make_response(200, "not json"),
        make_response(200, {"token_type": "Bearer"}),
        make_response(200, {"access_token": ""}),
    ])
    def test_token_exchange_failures(self, response):
        from fargate_e2e.services.auth_flows import fetch_client_credentials_token

        session = FakeSession().add("POST", "https://auth.example.com/oauth2/token", response)
        with pytest.raises(AuthFlowError):
            fetch_client_credentials_token(session, "https://auth.example.com/oauth2/token", "c", "s", "x")

    def test_unreachable_endpoint_is_transient(self):
        from fargate_e2e.services.auth_flows import fetch_client_credentials_token

        session = FakeSession().add("POST", "https://auth.example.com/oauth2/token",
                                    requests.ConnectionError("refused"))
        with pytest.raises(TransientError):
            fetch_client_credentials_token(session, "https://auth.example.com/oauth2/token", "c", "s", "x")


class TestHealthAndProfile:

    def test_wait_for_health(self, clock):
        from fargate_e2e.services.auth_flows import wait_for_health

        session = FakeSession().add("GET", f"{ALB}/health",
                                    requests.ConnectionError("refused"),
                                    make_response(503, "starting"),
                                    make_response(200, {"status": "ok"}))

        assert wait_for_health(session, f"{ALB}/health", clock.deadline(60), interval=5).status_code == 200
        assert clock.sleeps == [5, 5]

    def test_wait_for_health_deadline(self, clock):
        from fargate_e2e.services.auth_flows import wait_for_health

        session = FakeSession().add("GET", f"{ALB}/health", make_response(502, "bad gateway"))
        with pytest.raises(DeadlineExceeded):
            wait_for_health(session, f"{ALB}/health", clock.deadline(12), interval=5)

    @pytest.mark.parametrize("body,problems", [
        ({"user_id": "u", "claims": {}, "has_token": True}, 0),
        ({"claims": {}, "has_token": True}, 1),
        ({"user_id": "u", "has_token": True}, 1),
        ({"user_id": "u", "claims": {}, "has_token": False}, 1),
        ({}, 3),
    ])
    def test_check_profile(self, body, problems):
        from fargate_e2e.services.auth_flows import check_profile

        assert len(check_profile(body)) == problems
