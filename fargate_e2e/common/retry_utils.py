"""
Retry utilities for AWS client calls.

Collects the retry pattern used by every executor in one place:
- error classification (transient / throttling / timeout / non-retryable)
- exponential backoff with jitter
- deadline-bounded retry of a single call

Usage:
    from fargate_e2e.common.retry_utils import retry_call, with_retry_sync

    @with_retry_sync(max_retries=3)
    def describe():
        ...

    result = retry_call(client.describe_tasks, kwargs={...}, deadline=deadline)

Recommended settings per service:
- ECS/Fargate: max_retries=3, base_delay=1.0 (provisioning)
- Step Functions: max_retries=2, base_delay=0.5
- CloudWatch Logs: max_retries=3, base_delay=0.5 (throttles under polling)
- Batch: max_retries=3, base_delay=1.0
- EventBridge / SQS: max_retries=3, base_delay=0.5

These sit on top of botocore's own retries (see aws_clients.BOTO_CONFIG).
"""
import time
import random
import logging
import functools
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import Timeout as RequestsTimeout

from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import DeadlineExceeded, TransientError

logger = logging.getLogger(__name__)


# =============================================================================
# Error classification
# =============================================================================

class RetryableErrorCategory(Enum):
    TRANSIENT = "transient"
    THROTTLING = "throttling"
    TIMEOUT = "timeout"
    NON_RETRYABLE = "non_retryable"


RETRYABLE_NETWORK_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    EndpointConnectionError,
    ConnectionClosedError,
    ReadTimeoutError,
    ConnectTimeoutError,
    RequestsConnectionError,
    RequestsTimeout,
    TransientError,
)


AWS_ERROR_CATEGORIES: Dict[str, RetryableErrorCategory] = {
    # Transient
    "InternalServerError": RetryableErrorCategory.TRANSIENT,
    "InternalFailure": RetryableErrorCategory.TRANSIENT,
    "ServiceUnavailable": RetryableErrorCategory.TRANSIENT,
    "ServiceUnavailableException": RetryableErrorCategory.TRANSIENT,
    "ServiceException": RetryableErrorCategory.TRANSIENT,
    "ServerException": RetryableErrorCategory.TRANSIENT,

    # Throttling
    "ThrottlingException": RetryableErrorCategory.THROTTLING,
    "Throttling": RetryableErrorCategory.THROTTLING,
    "TooManyRequestsException": RetryableErrorCategory.THROTTLING,
    "RequestLimitExceeded": RetryableErrorCategory.THROTTLING,
    "LimitExceededException": RetryableErrorCategory.THROTTLING,

    # Timeout
    "RequestTimeout": RetryableErrorCategory.TIMEOUT,
    "RequestTimeoutException": RetryableErrorCategory.TIMEOUT,

    # Non-retryable
    "AccessDeniedException": RetryableErrorCategory.NON_RETRYABLE,
    "ValidationException": RetryableErrorCategory.NON_RETRYABLE,
    "InvalidParameterException": RetryableErrorCategory.NON_RETRYABLE,
    "InvalidParameterValueException": RetryableErrorCategory.NON_RETRYABLE,
    "ResourceNotFoundException": RetryableErrorCategory.NON_RETRYABLE,
    "ExecutionDoesNotExist": RetryableErrorCategory.NON_RETRYABLE,
    "ClientException": RetryableErrorCategory.NON_RETRYABLE,
    "UnrecognizedClientException": RetryableErrorCategory.NON_RETRYABLE,
}


def classify_aws_error(error: Exception) -> RetryableErrorCategory:
    """Map a ClientError to a category. Anything else is NON_RETRYABLE here."""
    if not isinstance(error, ClientError):
        return RetryableErrorCategory.NON_RETRYABLE

    error_code = error.response.get("Error", {}).get("Code", "")
    if not error_code:
        return RetryableErrorCategory.NON_RETRYABLE
    return AWS_ERROR_CATEGORIES.get(error_code, RetryableErrorCategory.NON_RETRYABLE)


def is_retryable(error: Exception) -> bool:
    """
    Whitelist-based retry decision.

    Retryable:
    1. ClientError classified as TRANSIENT, THROTTLING or TIMEOUT
    2. network / connection exceptions (botocore, requests, builtin)

    Everything else (auth errors, validation errors, logic errors) fails immediately.
    """
    if isinstance(error, ClientError):
        return classify_aws_error(error) != RetryableErrorCategory.NON_RETRYABLE
    return isinstance(error, RETRYABLE_NETWORK_EXCEPTIONS)


# =============================================================================
# Exponential backoff + jitter
# =============================================================================

def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    use_jitter: bool = True,
    jitter_mode: str = "full"
) -> float:
    """
    Delay before retry number ``attempt`` (0-based).

    Jitter modes:
    - full: delay * random(0, 1)
    - equal: delay/2 + random(0, delay/2)
    """
    exponential_delay = min(max_delay, base_delay * (exponential_base ** attempt))

    if not use_jitter:
        return exponential_delay

    if jitter_mode == "equal":
        return exponential_delay / 2 + (exponential_delay / 2) * random.random()
    return exponential_delay * random.random()


# =============================================================================
# Sync retry decorator
# =============================================================================

def with_retry_sync(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    use_jitter: bool = True,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    sleeper: Callable[[float], None] = time.sleep,
):
    """
    Sync retry decorator: exponential backoff + jitter.

    Usage:
        @with_retry_sync(max_retries=3)
        def sync_call():
            ...
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    retryable = should_retry(e) if should_retry is not None else is_retryable(e)
                    if not retryable:
                        logger.debug(f"🚫 Non-retryable error: {func.__name__} - {str(e)[:100]}")
                        raise
                    if attempt == max_retries:
                        logger.error(f"❌ Retries exhausted ({max_retries}): {func.__name__} - {str(e)[:100]}")
                        raise

                    delay = calculate_backoff_delay(attempt, base_delay, max_delay, exponential_base, use_jitter)
                    logger.warning(
                        f"⚠️ Retry {attempt + 1}/{max_retries}: {func.__name__} | "
                        f"error: {str(e)[:50]}... | retrying in {delay:.2f}s"
                    )
                    sleeper(delay)
        return wrapper
    return decorator


# =============================================================================
# Deadline-aware functional retry
# =============================================================================

def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: Optional[Dict[str, Any]] = None,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    use_jitter: bool = True,
    deadline: Optional[Deadline] = None,
    service: str = None,
    operation: str = None,
) -> Any:
    """
    Call ``func`` with retries, without a decorator.

    Retryable failures that survive every retry are re-raised as TransientError
    so callers (the poller, the correlator) can treat them as one failed
    observation. Backoff sleeps go through the deadline and stop when it expires.

    Usage:
        result = retry_call(
            ecs.describe_tasks,
            kwargs={'cluster': cluster, 'tasks': [arn]},
            max_retries=3,
            deadline=deadline
        )
    """
    kwargs = kwargs or {}
    operation = operation or getattr(func, "__name__", "call")

    for attempt in range(max_retries + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt == max_retries:
                raise TransientError(service, operation, e) from e

            if deadline is not None and deadline.expired:
                raise DeadlineExceeded(operation, deadline.elapsed, last_observed=e) from e

            delay = calculate_backoff_delay(attempt, base_delay, max_delay, use_jitter=use_jitter)
            logger.warning(
                f"⚠️ Retry {attempt + 1}/{max_retries}: {operation} | "
                f"error: {str(e)[:50]} | retrying in {delay:.2f}s"
            )
            if deadline is not None:
                deadline.sleep(delay)
            else:
                time.sleep(delay)
