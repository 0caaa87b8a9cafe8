"""
Execution Models - submissions, executions, log records and verdicts.

Every executor backend collapses its own status vocabulary into
ExecutionState; the poller, the correlator and the scenario driver only
ever see these models.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fargate_e2e.common.json_utils import ensure_json_serializable


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# States
# =============================================================================

class ExecutionState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATES

    @property
    def rank(self) -> int:
        """Position along PENDING -> RUNNING -> terminal."""
        if self is ExecutionState.PENDING:
            return 0
        if self is ExecutionState.RUNNING:
            return 1
        return 2


TERMINAL_STATES = frozenset({
    ExecutionState.SUCCEEDED,
    ExecutionState.FAILED,
    ExecutionState.TIMED_OUT,
    ExecutionState.ABORTED,
})

FAILURE_STATES = frozenset({
    ExecutionState.FAILED,
    ExecutionState.TIMED_OUT,
    ExecutionState.ABORTED,
})


class SubmissionMode(str, Enum):
    DIRECT = "direct"
    EVENT = "event"
    SCHEDULED = "scheduled"


# =============================================================================
# Submission
# =============================================================================

class Submission(BaseModel):
    """
    One request to execute work. Frozen: built once by a scenario, consumed
    once by an executor.

    ``correlation_token`` is unique per submission and is embedded into the
    payload by executors that support it, so the correlator and the log store
    can pick out this submission's execution among concurrent ones.
    """
    model_config = ConfigDict(frozen=True)

    target: str = Field(..., min_length=1)
    payload: Any = None
    mode: SubmissionMode = SubmissionMode.DIRECT
    array_size: Optional[int] = Field(default=None, ge=2, le=10000)
    correlation_token: str = Field(default_factory=lambda: uuid.uuid4().hex)
    submitted_at: datetime = Field(default_factory=utc_now)

    @field_validator("payload")
    @classmethod
    def _payload_serializable(cls, v: Any) -> Any:
        ensure_json_serializable(v)
        return v

    @field_validator("submitted_at")
    @classmethod
    def _submitted_at_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def serialized_payload(self) -> str:
        return ensure_json_serializable(self.payload)


# =============================================================================
# Execution
# =============================================================================

class ArrayStatusSummary(BaseModel):
    """Per-state child counts of an array execution."""
    model_config = ConfigDict(frozen=True)

    size: int = Field(..., ge=0)
    counts: Dict[ExecutionState, int] = Field(default_factory=dict)
    raw_counts: Dict[str, int] = Field(default_factory=dict)
    # the parent job itself reached a terminal status
    parent_terminal: bool = False

    def count(self, state: ExecutionState) -> int:
        return self.counts.get(state, 0)

    @property
    def terminal_count(self) -> int:
        return sum(n for s, n in self.counts.items() if s.is_terminal)

    @property
    def all_terminal(self) -> bool:
        return self.parent_terminal or (self.size > 0 and self.terminal_count >= self.size)

    def aggregate_state(self) -> ExecutionState:
        """
        FAILED as soon as any child failed, SUCCEEDED only when every child
        succeeded, otherwise RUNNING/PENDING.
        """
        if any(self.count(s) > 0 for s in FAILURE_STATES):
            return ExecutionState.FAILED
        if self.size > 0 and self.count(ExecutionState.SUCCEEDED) >= self.size:
            return ExecutionState.SUCCEEDED
        if self.count(ExecutionState.RUNNING) or self.count(ExecutionState.SUCCEEDED):
            return ExecutionState.RUNNING
        return ExecutionState.PENDING

    def progress_line(self) -> str:
        parts = [f"{k}={v}" for k, v in self.raw_counts.items()] if self.raw_counts else [
            f"{s.value}={n}" for s, n in self.counts.items()
        ]
        return ", ".join(parts) or "no children yet"


class Execution(BaseModel):
    """One running or completed unit of work."""
    model_config = ConfigDict(frozen=True)

    handle: Optional[str] = None
    state: ExecutionState = ExecutionState.PENDING
    name: Optional[str] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    output: Any = None
    failure_reason: Optional[str] = None
    raw_status: Optional[str] = None
    input: Optional[str] = None
    exit_code: Optional[int] = None
    array_summary: Optional[ArrayStatusSummary] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("started_at", "stopped_at")
    @classmethod
    def _timestamps_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v) if v is not None else None

    @model_validator(mode="after")
    def _output_and_reason_match_state(self) -> "Execution":
        if self.output is not None and self.state is not ExecutionState.SUCCEEDED:
            raise ValueError(f"output is only allowed on SUCCEEDED executions (state={self.state.value})")
        if self.failure_reason is not None and not self.state.is_failure:
            raise ValueError(f"failure_reason is only allowed on failed executions (state={self.state.value})")
        return self

    @property
    def is_terminal(self) -> bool:
        """Array executions are terminal only when every child is."""
        if self.array_summary is not None and self.array_summary.size > 0:
            return self.array_summary.all_terminal
        return self.state.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.state is ExecutionState.SUCCEEDED

    def summary(self) -> str:
        text = f"{self.handle or '<no handle>'} [{self.raw_status or self.state.value}]"
        if self.failure_reason:
            text = f"{text} reason: {self.failure_reason}"
        return text


# =============================================================================
# Correlation window
# =============================================================================

class CorrelationWindow(BaseModel):
    """
    ``[earliest, latest]`` around a submission; ``not_before`` additionally
    bounds scheduled submissions to the fire time minus a buffer.
    """
    model_config = ConfigDict(frozen=True)

    earliest: datetime
    latest: datetime
    not_before: Optional[datetime] = None

    @field_validator("earliest", "latest", "not_before")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v) if v is not None else None

    @model_validator(mode="after")
    def _ordered(self) -> "CorrelationWindow":
        if self.latest < self.earliest:
            raise ValueError("correlation window ends before it starts")
        return self

    @classmethod
    def around(cls, at: datetime, skew_seconds: float, max_wait_seconds: float,
               not_before: Optional[datetime] = None) -> "CorrelationWindow":
        at = _as_utc(at)
        return cls(
            earliest=at - timedelta(seconds=skew_seconds),
            latest=at + timedelta(seconds=max_wait_seconds),
            not_before=not_before,
        )

    @classmethod
    def for_scheduled(cls, fire_at: datetime, buffer_seconds: float,
                      max_wait_seconds: float) -> "CorrelationWindow":
        fire_at = _as_utc(fire_at)
        lower = fire_at - timedelta(seconds=buffer_seconds)
        return cls(earliest=lower, latest=fire_at + timedelta(seconds=max_wait_seconds), not_before=lower)

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None:
            return False
        moment = _as_utc(moment)
        if self.not_before is not None and moment <= self.not_before:
            return False
        return self.earliest <= moment <= self.latest

    def __str__(self) -> str:
        text = f"[{self.earliest.isoformat()} .. {self.latest.isoformat()}]"
        if self.not_before is not None:
            text = f"{text} after {self.not_before.isoformat()}"
        return text


# =============================================================================
# Logs
# =============================================================================

class LogRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    message: str
    stream: Optional[str] = None

    @classmethod
    def from_event(cls, event: Dict[str, Any], stream: Optional[str] = None) -> "LogRecord":
        ts = datetime.fromtimestamp(event.get("timestamp", 0) / 1000, tz=timezone.utc)
        return cls(timestamp=ts, message=event.get("message", ""), stream=stream or event.get("logStreamName"))

    def render(self) -> str:
        return f"[{self.timestamp.strftime('%H:%M:%S')}] {self.message.rstrip()}"


# =============================================================================
# Verdict
# =============================================================================

class ScenarioStage(str, Enum):
    BUILDING = "BUILDING"
    SUBMITTED = "SUBMITTED"
    CORRELATING = "CORRELATING"
    CORRELATED = "CORRELATED"
    POLLING = "POLLING"
    TERMINAL = "TERMINAL"
    VERIFIED = "VERIFIED"


class Check(BaseModel):
    name: str
    passed: bool
    details: Any = None


class Verdict(BaseModel):
    """Structured result of one scenario run."""

    scenario: str
    passed: bool
    message: str
    stage: ScenarioStage = ScenarioStage.BUILDING
    execution: Optional[Execution] = None
    checks: List[Check] = Field(default_factory=list)
    diagnostics: Dict[str, Any] = Field(default_factory=dict)
    log_tail: List[str] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    duration_seconds: float = 0.0
    exit_code: int = 0

    @property
    def failed_checks(self) -> List[Check]:
        return [c for c in self.checks if not c.passed]
