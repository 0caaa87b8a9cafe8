"""
Runtime settings for fargate-e2e.

Every timing constant used by the poller, the correlator and the log store
lives here. Values come from the model defaults, can be overridden from the
environment (prefix ``FARGATE_E2E_``), and finally per call / per CLI flag.

Usage:
    from fargate_e2e.config import Settings

    settings = Settings.from_env()
    settings.polling.poll_interval_seconds   # 5.0 unless FARGATE_E2E_POLL_INTERVAL_SECONDS is set
"""

import os
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fargate_e2e.common.exceptions import ConfigurationError

ENV_PREFIX = "FARGATE_E2E_"

T = TypeVar("T", bound=BaseModel)


class _EnvModel(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    @classmethod
    def from_env(cls: Type[T], environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> T:
        """Build the model from ``FARGATE_E2E_<FIELD>`` variables, then apply overrides."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if field.annotation in (List[str], Optional[List[str]]):
                values[name] = [part.strip() for part in raw.split(",") if part.strip()]
            else:
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e


class PollingSettings(_EnvModel):
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    readiness_timeout_seconds: float = Field(default=60.0, gt=0)
    scenario_timeout_seconds: float = Field(default=300.0, gt=0)
    # consecutive NotFound answers tolerated right after submit
    not_found_tolerance: int = Field(default=3, ge=0)
    transient_retries: int = Field(default=3, ge=0)


class CorrelationSettings(_EnvModel):
    skew_seconds: float = Field(default=30.0, ge=0)
    max_wait_seconds: float = Field(default=120.0, gt=0)
    event_initial_delay_seconds: float = Field(default=2.0, ge=0)
    event_max_attempts: int = Field(default=10, ge=1)
    event_attempt_interval_seconds: float = Field(default=3.0, ge=0)
    scheduled_delay_minutes: int = Field(default=1, ge=1)
    scheduled_max_attempts: int = Field(default=20, ge=1)
    scheduled_attempt_interval_seconds: float = Field(default=5.0, ge=0)
    scheduled_buffer_seconds: float = Field(default=30.0, ge=0)
    match_token: bool = True


class LogSettings(_EnvModel):
    lookback_seconds: float = Field(default=60.0, ge=0)
    find_max_attempts: int = Field(default=24, ge=1)
    success_markers: List[str] = Field(default_factory=lambda: ['"status": "success"', '"status":"success"'])
    reset_marker: str = "Processing message:"
    stream_limit: int = Field(default=10, ge=1, le=50)
    tail_size: int = Field(default=50, ge=0)
    success_tail_size: int = Field(default=20, ge=0)

    @field_validator("success_markers")
    @classmethod
    def _markers_not_empty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one success marker is required")
        return v


class Settings(BaseModel):
    """All settings, grouped."""

    polling: PollingSettings = Field(default_factory=PollingSettings)
    correlation: CorrelationSettings = Field(default_factory=CorrelationSettings)
    logs: LogSettings = Field(default_factory=LogSettings)
    region: Optional[str] = None
    metric_namespace: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        return cls(
            polling=PollingSettings.from_env(environ),
            correlation=CorrelationSettings.from_env(environ),
            logs=LogSettings.from_env(environ),
            region=environ.get("AWS_REGION") or environ.get("AWS_DEFAULT_REGION"),
            metric_namespace=environ.get(f"{ENV_PREFIX}METRIC_NAMESPACE") or None,
        )
