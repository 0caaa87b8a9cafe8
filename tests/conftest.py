"""
pytest configuration for fargate-e2e tests.

Every test runs with dummy AWS credentials so nothing can reach a real
account; moto-backed tests build their clients inside ``mock_aws()``.
"""
import os
from datetime import datetime, timedelta, timezone

import pytest

from fargate_e2e.common.aws_clients import reset_clients
from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.logging_utils import reset_loggers
from fargate_e2e.config import Settings

REGION = "us-east-1"


@pytest.fixture(scope="session", autouse=True)
def setup_global_test_environment():
    """Dummy credentials and region for the whole session"""

    # AWS_PROFILE would make boto3 ignore the dummy credentials
    if "AWS_PROFILE" in os.environ:
        del os.environ["AWS_PROFILE"]

    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = REGION
    os.environ["AWS_REGION"] = REGION
    os.environ.setdefault("LOG_LEVEL", "DEBUG")

    yield


@pytest.fixture(autouse=True)
def fresh_clients():
    """Clients cached under one moto context must not leak into the next test."""
    reset_clients()
    yield
    reset_clients()
    reset_loggers()


class FakeClock:
    """
    Monotonic clock, sleeper and UTC wall clock that move together.

    Sleeping advances time instantly, so deadline and polling tests run
    without real waits. ``sleeps`` records every requested sleep.
    """

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, 10, tzinfo=timezone.utc)):
        self.now = 0.0
        self.start = start
        self.sleeps = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def utcnow(self) -> datetime:
        return self.start + timedelta(seconds=self.now)

    def deadline(self, seconds=300) -> Deadline:
        return Deadline(seconds, clock=self.monotonic, sleeper=self.sleep)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Defaults, with the region pinned and no metric namespace."""
    return Settings(region=REGION)
