"""
Shared AWS client module
Boto3 clients are created once per (service, region) and reused by every executor.

Usage:
    from fargate_e2e.common.aws_clients import get_ecs_client, get_logs_client

    ecs = get_ecs_client()
    logs = get_logs_client(region="eu-west-1")

Tests call reset_clients() so each moto context gets fresh clients.
"""

import os
import logging
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)

# botocore retries handle throttling at the HTTP layer; retry_utils adds
# application level retries on top.
BOTO_CONFIG = Config(
    retries={"max_attempts": 3, "mode": "standard"},
    read_timeout=int(os.environ.get("FARGATE_E2E_AWS_READ_TIMEOUT_SECONDS", "60")),
    connect_timeout=int(os.environ.get("FARGATE_E2E_AWS_CONNECT_TIMEOUT_SECONDS", "5")),
)

# Global client cache
_clients: Dict[Tuple[str, Optional[str]], Any] = {}


def _default_region() -> Optional[str]:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")


def get_client(service_name: str, region: Optional[str] = None):
    """
    Cached boto3 client

    Args:
        service_name: boto3 service name ('ecs', 'logs', ...)
        region: region override (default: AWS_REGION / AWS_DEFAULT_REGION)

    Returns:
        boto3 client
    """
    region = region or _default_region()
    key = (service_name, region)
    client = _clients.get(key)
    if client is None:
        client = boto3.client(service_name, region_name=region, config=BOTO_CONFIG)
        _clients[key] = client
        logger.debug(f"{service_name} client initialized (region={region})")
    return client


def reset_clients() -> None:
    """Drop every cached client."""
    _clients.clear()


def get_ecs_client(region: Optional[str] = None):
    return get_client("ecs", region)


def get_stepfunctions_client(region: Optional[str] = None):
    return get_client("stepfunctions", region)


def get_logs_client(region: Optional[str] = None):
    return get_client("logs", region)


def get_sqs_client(region: Optional[str] = None):
    return get_client("sqs", region)


def get_batch_client(region: Optional[str] = None):
    return get_client("batch", region)


def get_events_client(region: Optional[str] = None):
    return get_client("events", region)


def get_ec2_client(region: Optional[str] = None):
    return get_client("ec2", region)


def get_cloudwatch_client(region: Optional[str] = None):
    """CloudWatch client, only used when verdict metrics are enabled."""
    return get_client("cloudwatch", region)
