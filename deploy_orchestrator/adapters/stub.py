"""Deterministic in-memory collaborators for development and testing."""

from __future__ import annotations

import logging
from typing import Mapping, Sequence

from deploy_orchestrator.application.ports import (
    ArtifactInstaller,
    HealthProbe,
    MetricsFeed,
    ProbeObservation,
    RoutingBackend,
)
from deploy_orchestrator.models import HealthCheckConfig, Target

logger = logging.getLogger(__name__)


class StubRoutingBackend(RoutingBackend):
    """Keeps the upstream membership and weights in memory."""

    def __init__(self) -> None:
        self.members: set[str] = set()
        self.weights: dict[str, float] = {}

    async def remove(self, target: Target) -> None:
        logger.debug("Stubbed drain of %s", target.id)
        self.members.discard(target.id)

    async def add(self, target: Target) -> None:
        logger.debug("Stubbed restore of %s", target.id)
        self.members.add(target.id)

    async def set_weights(self, weights: Mapping[str, float]) -> None:
        self.weights.update(weights)


class StubInstaller(ArtifactInstaller):
    """Remembers which artifact each target was given."""

    def __init__(self) -> None:
        self.installed: dict[str, str] = {}

    async def install(self, target: Target, artifact: str) -> None:
        logger.debug("Stubbed install of %s on %s", artifact, target.id)
        self.installed[target.id] = artifact


class StubHealthProbe(HealthProbe):
    """Every target answers with the first expected status."""

    async def probe(self, target: Target, config: HealthCheckConfig) -> ProbeObservation:
        return ProbeObservation(status_code=config.expected_statuses[0])


class StubMetricsFeed(MetricsFeed):
    """Reports a constant error rate."""

    def __init__(self, error_rate: float = 0.0):
        self._error_rate = error_rate

    async def error_rate(self, target_ids: Sequence[str], window_seconds: float) -> float:
        return self._error_rate


class UnconfiguredMetricsFeed(MetricsFeed):
    """Stands in when no metrics endpoint is configured; every read fails."""

    async def error_rate(self, target_ids: Sequence[str], window_seconds: float) -> float:
        raise RuntimeError("No metrics feed configured (set METRICS_API_URL)")
