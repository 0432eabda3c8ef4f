"""FastAPI application entry point."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from pydantic import TypeAdapter

from deploy_orchestrator.adapters.http import HttpHealthProbe, HttpMetricsFeed, HttpRoutingBackend
from deploy_orchestrator.adapters.installer import CommandInstaller
from deploy_orchestrator.adapters.persistence import DatabaseVersionStore
from deploy_orchestrator.adapters.stub import (
    StubHealthProbe,
    StubInstaller,
    StubMetricsFeed,
    StubRoutingBackend,
    UnconfiguredMetricsFeed,
)
from deploy_orchestrator.adapters.time import SystemClock
from deploy_orchestrator.application.context import DeploymentContext
from deploy_orchestrator.application.ports import (
    ArtifactInstaller,
    HealthProbe,
    MetricsFeed,
    RoutingBackend,
)
from deploy_orchestrator.application.services.orchestrator import Orchestrator
from deploy_orchestrator.config import Settings, get_settings
from deploy_orchestrator.database import Database
from deploy_orchestrator.health import HealthChecker
from deploy_orchestrator.models import Target
from deploy_orchestrator.registry import TargetRegistry
from deploy_orchestrator.routers import api
from deploy_orchestrator.traffic import TrafficController

logger = logging.getLogger(__name__)


def load_inventory(path: Path) -> list[Target]:
    """Read a JSON list of targets."""
    return TypeAdapter(list[Target]).validate_json(path.read_text())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    database = Database(settings.database_path)
    database.initialize_schema()

    probe: HealthProbe
    backend: RoutingBackend
    installer: ArtifactInstaller
    metrics: MetricsFeed
    closers = []
    if settings.stub_mode:
        logger.warning("STUB_MODE enabled; no real hosts will be touched")
        probe = StubHealthProbe()
        backend = StubRoutingBackend()
        installer = StubInstaller()
        metrics = StubMetricsFeed()
    else:
        http_probe = HttpHealthProbe()
        http_backend = HttpRoutingBackend(
            base_url=settings.routing_api_url or "",
            upstream=settings.routing_upstream,
            token=settings.routing_api_token,
        )
        closers.extend([http_probe.close, http_backend.close])
        probe, backend = http_probe, http_backend
        installer = CommandInstaller(
            settings.install_command or "", timeout_seconds=settings.install_timeout_seconds
        )
        if settings.metrics_api_url:
            http_metrics = HttpMetricsFeed(base_url=settings.metrics_api_url)
            closers.append(http_metrics.close)
            metrics = http_metrics
        else:
            metrics = UnconfiguredMetricsFeed()

    registry = TargetRegistry()
    if settings.target_inventory_path:
        for target in load_inventory(settings.target_inventory_path):
            registry.register(target)

    clock = SystemClock()
    context = DeploymentContext(
        registry=registry,
        version_store=DatabaseVersionStore(database),
        health_checker=HealthChecker(probe, clock),
        traffic=TrafficController(
            backend,
            clock,
            grace_seconds=settings.drain_grace_seconds,
            drain_timeout_seconds=settings.drain_timeout_seconds,
        ),
        installer=installer,
        metrics=metrics,
        clock=clock,
        logger=logging.getLogger("deploy_orchestrator.orchestrator"),
    )
    orchestrator = Orchestrator(
        context, default_timeout_seconds=settings.request_timeout_seconds
    )

    app.state.settings = settings
    app.state.database = database
    app.state.registry = registry
    app.state.orchestrator = orchestrator
    try:
        yield
    finally:
        for close in closers:
            await close()
        database.close()


app = FastAPI(title="Deploy Orchestrator", lifespan=lifespan)

app.include_router(api.router)
