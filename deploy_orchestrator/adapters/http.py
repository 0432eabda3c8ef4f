"""HTTP adapters for health probing, routing control and the metrics feed."""

from __future__ import annotations

import logging
from typing import Mapping, Optional, Sequence

import httpx

from deploy_orchestrator.application.ports import (
    HealthProbe,
    MetricsFeed,
    ProbeObservation,
    RoutingBackend,
)
from deploy_orchestrator.models import HealthCheckConfig, Target

logger = logging.getLogger(__name__)


class HttpHealthProbe(HealthProbe):
    """GETs the health endpoint of a target and reports the status code."""

    def __init__(self, *, client: Optional[httpx.AsyncClient] = None, scheme: str = "http"):
        self._client = client or httpx.AsyncClient()
        self._scheme = scheme

    async def close(self) -> None:
        await self._client.aclose()

    async def probe(self, target: Target, config: HealthCheckConfig) -> ProbeObservation:
        port = config.port or target.port
        path = config.path if config.path.startswith("/") else f"/{config.path}"
        url = f"{self._scheme}://{target.address}:{port}{path}"
        try:
            response = await self._client.get(url, timeout=config.timeout_seconds)
        except httpx.TimeoutException:
            return ProbeObservation(timed_out=True, detail=f"GET {url} timed out")
        except httpx.HTTPError as exc:
            logger.debug("Health probe to %s failed: %s", url, exc)
            return ProbeObservation(detail=f"GET {url} failed: {exc}")
        return ProbeObservation(status_code=response.status_code)


class HttpRoutingBackend(RoutingBackend):
    """Talks to the load balancer's JSON control API for one upstream."""

    def __init__(
        self,
        *,
        base_url: str,
        upstream: str = "default",
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else None
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers)
        self._upstream = upstream

    async def close(self) -> None:
        await self._client.aclose()

    async def remove(self, target: Target) -> None:
        await self._post(f"/upstreams/{self._upstream}/servers/{target.id}/drain", {})

    async def add(self, target: Target) -> None:
        await self._post(
            f"/upstreams/{self._upstream}/servers/{target.id}/restore",
            {"address": f"{target.address}:{target.port}"},
        )

    async def set_weights(self, weights: Mapping[str, float]) -> None:
        url = f"/upstreams/{self._upstream}/weights"
        logger.debug("PUT %s %s", url, dict(weights))
        response = await self._client.put(url, json={"weights": dict(weights)}, timeout=30)
        response.raise_for_status()

    async def _post(self, url: str, payload: dict[str, str]) -> None:
        logger.debug("POST %s", url)
        response = await self._client.post(url, json=payload, timeout=30)
        response.raise_for_status()


class HttpMetricsFeed(MetricsFeed):
    """Reads the error rate of a target group from a metrics query endpoint."""

    def __init__(self, *, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(base_url=base_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def error_rate(self, target_ids: Sequence[str], window_seconds: float) -> float:
        params = {"targets": ",".join(target_ids), "window": f"{int(window_seconds)}s"}
        response = await self._client.get("/error-rate", params=params, timeout=30)
        response.raise_for_status()
        payload = response.json()
        return float(payload["error_rate"])
