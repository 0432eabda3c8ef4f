import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional, Sequence

import pytest

from deploy_orchestrator.adapters.persistence import DatabaseVersionStore
from deploy_orchestrator.application.context import DeploymentContext
from deploy_orchestrator.application.ports import (
    ArtifactInstaller,
    Clock,
    HealthProbe,
    MetricsFeed,
    ProbeObservation,
    RoutingBackend,
)
from deploy_orchestrator.application.services.orchestrator import Orchestrator
from deploy_orchestrator.database import Database
from deploy_orchestrator.errors import InstallError
from deploy_orchestrator.health import HealthChecker
from deploy_orchestrator.models import (
    DeploymentConfig,
    DeploymentRequest,
    HealthCheckConfig,
    Target,
)
from deploy_orchestrator.registry import TargetRegistry
from deploy_orchestrator.traffic import TrafficController


class FakeClock(Clock):
    """Virtual time: ``sleep`` advances the clock instead of waiting."""

    def __init__(self) -> None:
        self.start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.elapsed = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def monotonic(self) -> float:
        return self.elapsed

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.elapsed += max(0.0, seconds)
        await asyncio.sleep(0)


class FakeRoutingBackend(RoutingBackend):
    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []
        self.members: set[str] = set()
        self.weights: dict[str, float] = {}
        self.failing: set[tuple[str, str]] = set()
        self.fail_weights = False
        self.on_set_weights: Optional[Callable[[dict[str, float]], None]] = None

    async def remove(self, target: Target) -> None:
        self.calls.append(("remove", target.id))
        if ("remove", target.id) in self.failing:
            raise RuntimeError("upstream rejected drain")
        self.members.discard(target.id)

    async def add(self, target: Target) -> None:
        self.calls.append(("add", target.id))
        if ("add", target.id) in self.failing:
            raise RuntimeError("upstream rejected restore")
        self.members.add(target.id)

    async def set_weights(self, weights: Mapping[str, float]) -> None:
        self.calls.append(("weights", dict(weights)))
        if self.fail_weights:
            raise RuntimeError("weights endpoint unavailable")
        if self.on_set_weights is not None:
            self.on_set_weights(dict(weights))
        self.weights.update(weights)


class FakeInstaller(ArtifactInstaller):
    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self.installed: dict[str, str] = dict(initial or {})
        self.calls: list[tuple[str, str]] = []
        self.failing: set[tuple[str, str]] = set()
        self.crashes: dict[tuple[str, str], Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.waiting = asyncio.Event()

    async def install(self, target: Target, artifact: str) -> None:
        self.calls.append((target.id, artifact))
        gate = self.gates.get(target.id)
        if gate is not None:
            self.waiting.set()
            await gate.wait()
        if (target.id, artifact) in self.failing:
            raise InstallError(target.id, f"could not unpack {artifact}")
        if (target.id, artifact) in self.crashes:
            raise self.crashes[(target.id, artifact)]
        self.installed[target.id] = artifact

    def targets_given(self, artifact: str) -> set[str]:
        return {target_id for target_id, installed in self.calls if installed == artifact}


class FakeHealthProbe(HealthProbe):
    """Answers 200 unless the installed (target, version) has a script.

    A script is a list of observations consumed one per probe; the last one
    repeats. A timed-out observation consumes the configured probe timeout.
    """

    def __init__(self, installer: FakeInstaller, clock: FakeClock) -> None:
        self.installer = installer
        self.clock = clock
        self.scripts: dict[tuple[str, Optional[str]], list[ProbeObservation]] = {}
        self.probes: list[tuple[str, Optional[str]]] = []

    def script(self, target_id: str, version: str, *observations: ProbeObservation) -> None:
        self.scripts[(target_id, version)] = list(observations)

    async def probe(self, target: Target, config: HealthCheckConfig) -> ProbeObservation:
        key = (target.id, self.installer.installed.get(target.id))
        self.probes.append(key)
        script = self.scripts.get(key)
        if not script:
            return ProbeObservation(status_code=200)
        observation = script.pop(0) if len(script) > 1 else script[0]
        if observation.timed_out:
            await self.clock.sleep(config.timeout_seconds)
        return observation


class FakeMetricsFeed(MetricsFeed):
    def __init__(self, rates: Sequence[float] = ()) -> None:
        self.rates = list(rates)
        self.calls: list[tuple[tuple[str, ...], float]] = []
        self.error: Optional[Exception] = None

    async def error_rate(self, target_ids: Sequence[str], window_seconds: float) -> float:
        self.calls.append((tuple(target_ids), window_seconds))
        if self.error is not None:
            raise self.error
        if not self.rates:
            return 0.0
        return self.rates.pop(0) if len(self.rates) > 1 else self.rates[0]


TIMED_OUT = ProbeObservation(timed_out=True)
SERVER_ERROR = ProbeObservation(status_code=503)


@dataclass
class Harness:
    database: Database
    clock: FakeClock = field(default_factory=FakeClock)
    registry: TargetRegistry = field(default_factory=TargetRegistry)
    backend: FakeRoutingBackend = field(default_factory=FakeRoutingBackend)
    installer: FakeInstaller = field(default_factory=FakeInstaller)
    metrics: FakeMetricsFeed = field(default_factory=FakeMetricsFeed)
    probe: FakeHealthProbe = field(init=False)
    store: DatabaseVersionStore = field(init=False)
    context: DeploymentContext = field(init=False)

    def __post_init__(self) -> None:
        self.probe = FakeHealthProbe(self.installer, self.clock)
        self.store = DatabaseVersionStore(self.database)
        self.context = DeploymentContext(
            registry=self.registry,
            version_store=self.store,
            health_checker=HealthChecker(self.probe, self.clock),
            traffic=TrafficController(
                self.backend, self.clock, grace_seconds=15, drain_timeout_seconds=60
            ),
            installer=self.installer,
            metrics=self.metrics,
            clock=self.clock,
            logger=logging.getLogger("tests.orchestrator"),
        )

    def add_targets(
        self,
        *ids: str,
        version: Optional[str] = "v1",
        routing_state: str = "in_rotation",
        group: Optional[str] = None,
    ) -> list[str]:
        for index, target_id in enumerate(ids, start=1):
            self.registry.register(
                Target(
                    id=target_id,
                    address=f"10.0.0.{index}",
                    group=group,
                    current_version=version,
                    routing_state=routing_state,
                )
            )
            if version is not None:
                self.installer.installed[target_id] = version
            if routing_state == "in_rotation":
                self.backend.members.add(target_id)
        return list(ids)

    def orchestrator(self, **kwargs) -> Orchestrator:
        return Orchestrator(self.context, **kwargs)

    def request(
        self,
        strategy: str,
        targets: Sequence[str],
        *,
        request_id: str = "req-1",
        artifact: str = "v2",
        **config,
    ) -> DeploymentRequest:
        return DeploymentRequest(
            id=request_id,
            artifact=artifact,
            targets=list(targets),
            strategy=strategy,
            config=DeploymentConfig(**config),
        )


def make_database(tmp_path):
    database = Database(tmp_path / "orchestrator.db")
    database.initialize_schema()
    return database


@pytest.fixture
def harness(tmp_path):
    database = make_database(tmp_path)
    yield Harness(database=database)
    database.close()
