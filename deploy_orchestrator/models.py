"""Pydantic models representing deployment orchestrator domain objects."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

RoutingStateType = Literal["in_rotation", "draining", "drained"]
StrategyKind = Literal["blue_green", "rolling", "canary"]
RecordOutcomeType = Literal[
    "success",
    "failed_health_check",
    "failed_rollback",
    "timed_out",
    "failed_install",
    "failed_routing",
    "cancelled",
]
TargetResultType = Literal[
    "success",
    "failed_health_check",
    "failed_rollback",
    "timed_out",
    "failed_install",
    "failed_routing",
    "cancelled",
    "untouched",
]
HealthStatusType = Literal["healthy", "unhealthy", "timeout"]
RunStateType = Literal["pending", "in_progress", "succeeded", "rolled_back", "failed"]
OutcomeStatusType = Literal["succeeded", "rolled_back", "failed", "timed_out", "rejected"]
BackoffKind = Literal["fixed", "exponential"]


class Target(BaseModel):
    """One deployable unit: a host or logical slot."""

    id: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    port: int = Field(80, ge=1, le=65535)
    group: Optional[str] = None
    current_version: Optional[str] = None
    routing_state: RoutingStateType = "in_rotation"
    retired: bool = False


class HealthCheckConfig(BaseModel):
    """Probe parameters used to decide whether a target is healthy."""

    path: str = "/health"
    port: Optional[int] = Field(None, ge=1, le=65535)
    expected_statuses: list[int] = Field(default_factory=lambda: list(range(200, 400)))
    timeout_seconds: float = Field(5.0, gt=0)
    max_attempts: int = Field(3, ge=1)
    backoff: BackoffKind = "fixed"
    backoff_seconds: float = Field(1.0, ge=0)
    max_backoff_seconds: float = Field(30.0, ge=0)
    healthy_threshold: int = Field(1, ge=1)

    @model_validator(mode="after")
    def _check_threshold(self) -> "HealthCheckConfig":
        if self.healthy_threshold > self.max_attempts:
            raise ValueError("healthy_threshold cannot exceed max_attempts")
        if not self.expected_statuses:
            raise ValueError("expected_statuses must not be empty")
        return self

    def backoff_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) attempt."""
        if self.backoff == "exponential":
            delay = self.backoff_seconds * (2 ** (attempt - 1))
        else:
            delay = self.backoff_seconds
        return min(delay, self.max_backoff_seconds)


class CanaryConfig(BaseModel):
    """Canary group sizing, weight schedule and observation window."""

    count: Optional[int] = Field(None, ge=1)
    fraction: float = Field(0.1, gt=0, lt=1)
    weight_schedule: list[float] = Field(default_factory=lambda: [10.0])
    observation_samples: int = Field(10, ge=1)
    sample_interval_seconds: float = Field(30.0, ge=0)
    error_rate_threshold: float = Field(0.05, ge=0, le=1)

    @model_validator(mode="after")
    def _check_schedule(self) -> "CanaryConfig":
        if not self.weight_schedule:
            raise ValueError("weight_schedule must contain at least one step")
        if any(weight <= 0 or weight >= 100 for weight in self.weight_schedule):
            raise ValueError("canary weights must be between 0 and 100 percent")
        return self


class BlueGreenConfig(BaseModel):
    """Pool assignment for blue-green runs."""

    standby: Optional[list[str]] = Field(
        None, description="Explicit standby pool (None = targets not in rotation)"
    )


class DeploymentConfig(BaseModel):
    """Tunable behaviour for a single deployment request."""

    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    batch_size: int = Field(1, ge=1)
    rollback_completed_on_failure: bool = Field(
        False, description="Also revert already-succeeded targets when a rolling run fails"
    )
    canary: CanaryConfig = Field(default_factory=CanaryConfig)
    blue_green: BlueGreenConfig = Field(default_factory=BlueGreenConfig)
    timeout_seconds: Optional[float] = Field(None, gt=0)


class DeploymentRequest(BaseModel):
    """Request to roll an artifact out to a set of targets."""

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1)
    artifact: str = Field(..., min_length=1, description="Opaque version string or digest")
    targets: list[str] = Field(default_factory=list, description="Ordered target identifiers")
    group: Optional[str] = Field(None, description="Group reference used when targets is empty")
    strategy: str
    config: DeploymentConfig = Field(default_factory=DeploymentConfig)


class DeploymentRecord(BaseModel):
    """One append-only row per (target, attempt)."""

    id: Optional[int] = None
    request_id: str
    target_id: str
    previous_version: Optional[str] = None
    attempted_version: str
    outcome: RecordOutcomeType
    detail: Optional[str] = None
    started_at: datetime
    completed_at: datetime


class HealthProbeResult(BaseModel):
    """Verdict of a health check against one target."""

    target_id: str
    timestamp: datetime
    status: HealthStatusType
    attempts: int = 0
    detail: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"


class TargetOutcome(BaseModel):
    """Final state of one target after a run."""

    target_id: str
    final_version: Optional[str] = None
    outcome: TargetResultType = "untouched"
    rolled_back: bool = False
    error: Optional[str] = None


class DeploymentOutcome(BaseModel):
    """Structured result returned for every submitted request."""

    request_id: str
    strategy: Optional[str] = None
    status: OutcomeStatusType
    per_target: list[TargetOutcome] = Field(default_factory=list)
    error_detail: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
