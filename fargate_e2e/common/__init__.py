"""
Common utility module
Shared clients, errors, retries, logging and JSON helpers used by every layer.
"""

from fargate_e2e.common.aws_clients import (
    get_client,
    reset_clients,
    get_ecs_client,
    get_stepfunctions_client,
    get_logs_client,
    get_sqs_client,
    get_batch_client,
    get_events_client,
    get_ec2_client,
    get_cloudwatch_client
)
from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import (
    BaseE2EError,
    TransientError,
    NotFoundError,
    CorrelationTimeout,
    DeadlineExceeded,
    TerminalFailure,
    AssertionFailure,
    AuthFlowError,
    SubmissionError,
    ExternalServiceError,
    ConfigurationError
)
from fargate_e2e.common.json_utils import (
    E2EJSONEncoder,
    dumps,
    pretty,
    try_parse_json
)
from fargate_e2e.common.retry_utils import (
    retry_call,
    with_retry_sync,
    is_retryable
)

__all__ = [
    # AWS clients
    'get_client',
    'reset_clients',
    'get_ecs_client',
    'get_stepfunctions_client',
    'get_logs_client',
    'get_sqs_client',
    'get_batch_client',
    'get_events_client',
    'get_ec2_client',
    'get_cloudwatch_client',
    # Deadline
    'Deadline',
    # Exceptions
    'BaseE2EError',
    'TransientError',
    'NotFoundError',
    'CorrelationTimeout',
    'DeadlineExceeded',
    'TerminalFailure',
    'AssertionFailure',
    'AuthFlowError',
    'SubmissionError',
    'ExternalServiceError',
    'ConfigurationError',
    # JSON
    'E2EJSONEncoder',
    'dumps',
    'pretty',
    'try_parse_json',
    # Retry
    'retry_call',
    'with_retry_sync',
    'is_retryable',
]
