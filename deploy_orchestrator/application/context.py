"""Explicitly constructed collaborators and per-run execution state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from deploy_orchestrator.application.cancellation import CancellationToken
from deploy_orchestrator.application.ports import (
    ArtifactInstaller,
    Clock,
    Logger,
    MetricsFeed,
    VersionStore,
)
from deploy_orchestrator.health import HealthChecker
from deploy_orchestrator.models import (
    DeploymentRequest,
    RoutingStateType,
    RunStateType,
    TargetOutcome,
)
from deploy_orchestrator.registry import TargetRegistry
from deploy_orchestrator.traffic import TrafficController

FAILURE_OUTCOMES = frozenset(
    {
        "failed_health_check",
        "failed_rollback",
        "timed_out",
        "failed_install",
        "failed_routing",
        "cancelled",
    }
)


@dataclass(slots=True)
class DeploymentContext:
    """Everything a strategy may touch, handed to the orchestrator at startup."""

    registry: TargetRegistry
    version_store: VersionStore
    health_checker: HealthChecker
    traffic: TrafficController
    installer: ArtifactInstaller
    metrics: MetricsFeed
    clock: Clock
    logger: Logger


@dataclass(slots=True)
class StrategyRun:
    """In-memory state of one request, owned by the strategy driving it."""

    request: DeploymentRequest
    target_ids: list[str]
    token: CancellationToken
    initial_versions: dict[str, Optional[str]]
    initial_routing: dict[str, RoutingStateType]
    state: RunStateType = "pending"
    phase: str = "pending"
    processed: list[str] = field(default_factory=list)
    results: dict[str, TargetOutcome] = field(default_factory=dict)
    provisional: set[str] = field(default_factory=set)
    attempt_started: dict[str, datetime] = field(default_factory=dict)
    rollback_failures: list[str] = field(default_factory=list)
    error_count: int = 0
    samples: list[float] = field(default_factory=list)
    weights_changed: bool = False
    halted: bool = False
    error_detail: Optional[str] = None

    @property
    def artifact(self) -> str:
        return self.request.artifact

    @property
    def remaining(self) -> list[str]:
        done = set(self.processed)
        return [target_id for target_id in self.target_ids if target_id not in done]

    def halt(self, detail: str) -> None:
        self.halted = True
        if self.error_detail is None:
            self.error_detail = detail

    def terminal_state(self) -> RunStateType:
        if self.rollback_failures:
            return "failed"
        if self.halted:
            return "rolled_back"
        for result in self.results.values():
            if result.rolled_back or result.outcome in FAILURE_OUTCOMES:
                return "rolled_back"
        return "succeeded"
