"""
AWS client error translation
Turns botocore ClientErrors into the fargate-e2e exception taxonomy.

Usage:
    from fargate_e2e.common.error_handlers import translate_client_error

    try:
        sfn.describe_execution(executionArn=arn)
    except ClientError as e:
        raise translate_client_error(e, service="stepfunctions", operation="describe_execution", identifier=arn)
"""

from botocore.exceptions import ClientError

from fargate_e2e.common.exceptions import (
    ConfigurationError,
    ExternalServiceError,
    NotFoundError,
    SubmissionError,
    TransientError,
)
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.common.retry_utils import is_retryable

logger = get_logger(__name__)


NOT_FOUND_CODES = frozenset({
    "ResourceNotFoundException",
    "ExecutionDoesNotExist",
    "StateMachineDoesNotExist",
    "AWS.SimpleQueueService.NonExistentQueue",
    "QueueDoesNotExist",
    "ClusterNotFoundException",
    "ServiceNotFoundException",
})

AUTH_CODES = frozenset({
    "AccessDeniedException",
    "AccessDenied",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredTokenException",
})


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", str(error))


def translate_client_error(
    error: ClientError,
    service: str,
    operation: str,
    identifier: str = None,
    submitting: bool = False
) -> Exception:
    """
    Convert a ClientError into a specific exception.

    Args:
        error: boto3 ClientError
        service: service name ("ecs", "logs", ...)
        operation: the operation that failed ("run_task", ...)
        identifier: handle / resource name involved, if any
        submitting: True when the call was a submission; non-retryable
            errors then become SubmissionError

    Returns:
        Exception: the exception to raise
    """
    code = error_code(error)
    message = error_message(error)

    logger.warning(
        f"{service} {operation} failed",
        extra={"aws_service": service, "operation": operation, "error_code": code, "identifier": identifier}
    )

    if is_retryable(error):
        return TransientError(service, operation, error)
    if code in NOT_FOUND_CODES:
        return NotFoundError(f"{service} resource", identifier or message)
    if code in AUTH_CODES:
        return ConfigurationError(f"{service} {operation} denied: {message}")
    if submitting:
        return SubmissionError(identifier or service, f"{code}: {message}")
    return ExternalServiceError(service, f"{operation} {code}: {message}")
