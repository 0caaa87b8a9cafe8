# -*- coding: utf-8 -*-
"""
Models package.
Pydantic models for submissions, executions, correlation windows, log records and verdicts.
"""

from fargate_e2e.models.execution_models import (
    ExecutionState,
    SubmissionMode,
    Submission,
    ArrayStatusSummary,
    Execution,
    CorrelationWindow,
    LogRecord,
    ScenarioStage,
    Check,
    Verdict,
    TERMINAL_STATES,
    FAILURE_STATES,
    utc_now,
)

__all__ = [
    "ExecutionState",
    "SubmissionMode",
    "Submission",
    "ArrayStatusSummary",
    "Execution",
    "CorrelationWindow",
    "LogRecord",
    "ScenarioStage",
    "Check",
    "Verdict",
    "TERMINAL_STATES",
    "FAILURE_STATES",
    "utc_now",
]
