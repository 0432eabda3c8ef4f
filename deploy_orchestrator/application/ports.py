"""Port definitions for Hexagonal architecture."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional, Protocol, Sequence

from deploy_orchestrator.models import DeploymentRecord, HealthCheckConfig, Target


class Clock(Protocol):
    """Provides wall-clock timestamps, a monotonic reading and suspension."""

    def now(self) -> datetime:
        ...

    def monotonic(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class Logger(Protocol):
    """Light-weight logging port."""

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        ...

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        ...

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        ...

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        ...


@dataclass(slots=True)
class ProbeObservation:
    """Raw result of a single probe attempt."""

    status_code: Optional[int] = None
    timed_out: bool = False
    detail: Optional[str] = None


class HealthProbe(Protocol):
    """Performs one network probe against a target."""

    async def probe(self, target: Target, config: HealthCheckConfig) -> ProbeObservation:
        ...


class RoutingBackend(Protocol):
    """Control interface of the external load balancer / reverse proxy."""

    async def remove(self, target: Target) -> None:
        ...

    async def add(self, target: Target) -> None:
        ...

    async def set_weights(self, weights: Mapping[str, float]) -> None:
        ...


class ArtifactInstaller(Protocol):
    """Places an artifact on a target and restarts its supervised process."""

    async def install(self, target: Target, artifact: str) -> None:
        ...


class MetricsFeed(Protocol):
    """Pull interface returning an error rate for a group of targets."""

    async def error_rate(self, target_ids: Sequence[str], window_seconds: float) -> float:
        ...


class VersionStore(Protocol):
    """Durable append-only record of deployment attempts."""

    def record(self, record: DeploymentRecord) -> DeploymentRecord:
        ...

    def last_success(
        self, target_id: str, *, exclude_version: Optional[str] = None
    ) -> Optional[DeploymentRecord]:
        ...

    def list_records(self, target_id: str) -> list[DeploymentRecord]:
        ...

    def list_for_request(self, request_id: str) -> list[DeploymentRecord]:
        ...
