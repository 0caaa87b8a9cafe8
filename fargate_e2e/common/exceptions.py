"""
Common exception classes
Custom exceptions shared by executors, the correlator, the poller and the scenario driver.

Usage:
    from fargate_e2e.common.exceptions import (
        TransientError, NotFoundError, CorrelationTimeout,
        DeadlineExceeded, TerminalFailure, AssertionFailure
    )

Propagation:
    - TransientError is retried at the client layer and never ends a wait loop on its own.
    - Everything else propagates unchanged up to the scenario driver, which turns it into a verdict.
"""

from typing import Any, Dict, List, Optional


class BaseE2EError(Exception):
    """Base class for every fargate-e2e error"""

    exit_code = 1

    def __init__(self, message: str = None):
        self.message = message or self.__class__.__doc__ or "An error occurred"
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "exitCode": self.exit_code
        }


# ============================================================
# Retryable errors
# ============================================================

class TransientError(BaseE2EError):
    """A network or throttling error that is safe to retry"""

    def __init__(self, service: str = None, operation: str = None, original_error: Exception = None):
        parts = [p for p in (service, operation) if p]
        where = "/".join(parts) if parts else "request"
        message = f"Transient error on {where}"
        if original_error is not None:
            message = f"{message}: {original_error}"
        super().__init__(message)
        self.service = service
        self.operation = operation
        self.original_error = original_error


# ============================================================
# Lookup errors
# ============================================================

class NotFoundError(BaseE2EError):
    """The requested handle or resource does not exist"""

    def __init__(self, resource: str = None, identifier: str = None):
        if resource and identifier:
            message = f"{resource} not found: {identifier}"
        elif identifier:
            message = f"Not found: {identifier}"
        else:
            message = f"{resource or 'Resource'} not found"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


# ============================================================
# Wait / correlation errors
# ============================================================

class CorrelationTimeout(BaseE2EError):
    """No execution matching the submission was found"""

    def __init__(
        self,
        target: str,
        attempts: int,
        window: Any = None,
        candidates: Optional[List[Any]] = None
    ):
        message = f"No execution of {target} matched after {attempts} attempt(s)"
        if window is not None:
            message = f"{message} (window: {window})"
        super().__init__(message)
        self.target = target
        self.attempts = attempts
        self.window = window
        self.candidates = list(candidates or [])

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "target": self.target,
            "attempts": self.attempts,
            "window": str(self.window) if self.window is not None else None,
            "candidates": [str(c) for c in self.candidates]
        })
        return base


class DeadlineExceeded(BaseE2EError):
    """The overall time budget ran out before the wait completed"""

    def __init__(self, operation: str, waited_seconds: float = None, last_observed: Any = None):
        message = f"Deadline exceeded while waiting for {operation}"
        if waited_seconds is not None:
            message = f"{message} (waited {waited_seconds:.1f}s)"
        super().__init__(message)
        self.operation = operation
        self.waited_seconds = waited_seconds
        self.last_observed = last_observed

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "operation": self.operation,
            "waitedSeconds": self.waited_seconds,
            "lastObserved": str(self.last_observed) if self.last_observed is not None else None
        })
        return base


# ============================================================
# Outcome errors
# ============================================================

class TerminalFailure(BaseE2EError):
    """The submitted work finished in a failed state"""

    def __init__(self, handle: str = None, state: str = None, reason: str = None, execution: Any = None):
        message = f"Execution {handle or '<unknown>'} ended in {state or 'a failed state'}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.handle = handle
        self.state = state
        self.reason = reason
        self.execution = execution


class AssertionFailure(BaseE2EError):
    """The observed output did not match what was expected"""

    def __init__(self, check: str, expected: Any = None, actual: Any = None, details: str = None):
        message = f"Check '{check}' failed: expected {expected!r}, got {actual!r}"
        if details:
            message = f"{message} ({details})"
        super().__init__(message)
        self.check = check
        self.expected = expected
        self.actual = actual
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "check": self.check,
            "expected": self.expected,
            "actual": self.actual
        })
        return base


class AuthFlowError(BaseE2EError):
    """A step of the HTTP authentication handshake failed"""

    def __init__(self, step: str, message: str = None, status_code: int = None):
        msg = f"[{step}] {message or 'authentication step failed'}"
        if status_code is not None:
            msg = f"{msg} (HTTP {status_code})"
        super().__init__(msg)
        self.step = step
        self.status_code = status_code


# ============================================================
# Submission / environment errors
# ============================================================

class SubmissionError(BaseE2EError):
    """The executor rejected the submission; it is never retried automatically"""

    def __init__(self, target: str = None, reason: str = None):
        message = f"Submission to {target or 'executor'} failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.target = target
        self.reason = reason


class ExternalServiceError(BaseE2EError):
    """An external service call failed and cannot be recovered"""

    def __init__(self, service_name: str, message: str = None):
        msg = f"External service error ({service_name}): {message}" if message else f"External service error: {service_name}"
        super().__init__(msg)
        self.service_name = service_name


class ConfigurationError(BaseE2EError):
    """Required parameters are missing or invalid"""

    exit_code = 2

    def __init__(self, message: str = None, field: str = None):
        if field:
            msg = f"Invalid configuration for '{field}': {message}"
        else:
            msg = message or "Invalid configuration"
        super().__init__(msg)
        self.field = field
