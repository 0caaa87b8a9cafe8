"""
Structured logging utility module
JSON structured logging using AWS Lambda Powertools.

aws_lambda_powertools is imported lazily, on the first get_logger() call,
so importing the package stays cheap for the CLI.

Usage:
    from fargate_e2e.common.logging_utils import get_logger, log_scenario_event

    logger = get_logger(__name__)
    logger.info("Submitting task", extra={"cluster": "demo"})

    log_scenario_event("scenario_passed", scenario="oneoff", handle="arn:...")
"""

import os
import functools
from typing import Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from aws_lambda_powertools import Logger


DEFAULT_SERVICE_NAME = "fargate-e2e"

_logger_instances: Dict[str, "Logger"] = {}

_powertools_loaded = False
_Logger = None


def _ensure_powertools_loaded():
    """Load AWS Lambda Powertools when first needed."""
    global _powertools_loaded, _Logger

    if _powertools_loaded:
        return

    from aws_lambda_powertools import Logger

    _Logger = Logger
    _powertools_loaded = True


def service_name() -> str:
    return os.getenv("FARGATE_E2E_SERVICE", DEFAULT_SERVICE_NAME)


def get_logger(name: str = None, level: str = None) -> "Logger":
    """
    Return a structured Logger instance.

    Args:
        name: logger name (default: this module)
        level: log level (default: LOG_LEVEL env var or INFO)

    Returns:
        Logger: AWS Lambda Powertools Logger instance
    """
    _ensure_powertools_loaded()

    if name is None:
        name = __name__

    if name in _logger_instances:
        return _logger_instances[name]

    # child loggers propagate to the service logger, so it must exist first
    if name != __name__ and __name__ not in _logger_instances:
        get_logger(__name__, level)

    log_level = level or os.getenv("LOG_LEVEL", "INFO")
    logger = _Logger(
        service=service_name(),
        level=log_level,
        child=name != __name__
    )

    _logger_instances[name] = logger
    return logger


def log_external_service_call(service_name: str, operation: str):
    """
    Decorator that logs the start, success and failure of an AWS/HTTP call.

    Args:
        service_name: service name (e.g. "ecs", "logs", "cognito")
        operation: operation name (e.g. "run_task", "get_log_events")

    Usage:
        @log_external_service_call("ecs", "run_task")
        def submit(self, submission):
            ...
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            logger.debug(
                f"Starting {service_name} {operation}",
                extra={"aws_service": service_name, "operation": operation, "function": func.__name__}
            )
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Failed {service_name} {operation}",
                    extra={
                        "aws_service": service_name,
                        "operation": operation,
                        "status": "error",
                        "error_type": type(e).__name__,
                        "error_message": str(e)
                    }
                )
                raise
            logger.debug(
                f"Completed {service_name} {operation}",
                extra={"aws_service": service_name, "operation": operation, "status": "success"}
            )
            return result
        return wrapper
    return decorator


def log_scenario_event(event_type: str, **context):
    """
    Log a scenario lifecycle event (submitted, correlated, terminal, verdict).

    Usage:
        log_scenario_event(
            "execution_terminal",
            scenario="workflow",
            handle="arn:aws:states:...",
            state="SUCCEEDED"
        )
    """
    logger = get_logger("scenario_events")
    logger.info(
        f"Scenario event: {event_type}",
        extra={
            "event_type": event_type,
            "event_category": "scenario",
            **context
        }
    )


def reset_loggers(level: Optional[str] = None) -> None:
    """Forget cached loggers, optionally forcing a new LOG_LEVEL for the next ones."""
    _logger_instances.clear()
    if level:
        os.environ["LOG_LEVEL"] = level
