"""Traffic control on top of the routing backend."""

from __future__ import annotations

import logging
from typing import Mapping

from .application.ports import Clock, RoutingBackend
from .errors import TrafficControlError
from .models import Target

logger = logging.getLogger(__name__)


class TrafficController:
    """Adds and removes targets from live traffic and shifts weighted splits.

    ``drain`` returns only after the configured grace period (capped by the
    drain timeout) has elapsed, so in-flight connections get a chance to
    finish. Any backend failure surfaces as :class:`TrafficControlError`.
    """

    def __init__(
        self,
        backend: RoutingBackend,
        clock: Clock,
        *,
        grace_seconds: float = 15.0,
        drain_timeout_seconds: float = 60.0,
    ):
        self._backend = backend
        self._clock = clock
        self._grace = max(0.0, grace_seconds)
        self._drain_timeout = max(0.0, drain_timeout_seconds)
        self._last_weights: dict[str, float] = {}

    @property
    def last_weights(self) -> dict[str, float]:
        """The weights this controller last applied successfully."""
        return dict(self._last_weights)

    async def drain(self, target: Target) -> None:
        try:
            await self._backend.remove(target)
        except Exception as exc:
            raise TrafficControlError(target.id, f"drain failed: {exc}") from exc
        wait = min(self._grace, self._drain_timeout)
        logger.debug("Draining %s for %.1fs", target.id, wait)
        await self._clock.sleep(wait)

    async def restore(self, target: Target) -> None:
        try:
            await self._backend.add(target)
        except Exception as exc:
            raise TrafficControlError(target.id, f"restore failed: {exc}") from exc
        logger.debug("Restored %s to rotation", target.id)

    async def set_weights(self, weights: Mapping[str, float]) -> None:
        try:
            await self._backend.set_weights(dict(weights))
        except Exception as exc:
            raise TrafficControlError(
                ",".join(sorted(weights)), f"weight update failed: {exc}"
            ) from exc
        self._last_weights = dict(weights)
        logger.info("Applied traffic weights %s", _format_weights(weights))


def split_weights(target_ids: list[str], total: float) -> dict[str, float]:
    """Spread ``total`` percent evenly across ``target_ids``."""
    if not target_ids:
        return {}
    share = total / len(target_ids)
    return {target_id: share for target_id in target_ids}


def _format_weights(weights: Mapping[str, float]) -> str:
    return ", ".join(f"{key}={value:.1f}%" for key, value in sorted(weights.items()))
