"""Health verification for deployment targets."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .application.ports import Clock, HealthProbe, ProbeObservation
from .errors import HealthCheckFailure
from .models import HealthCheckConfig, HealthProbeResult, HealthStatusType, Target

logger = logging.getLogger(__name__)


class HealthChecker:
    """Runs debounced, retried probes and classifies the target.

    A target is ``healthy`` once ``healthy_threshold`` consecutive probes match
    the expected statuses. If attempts run out first, the verdict is
    ``unhealthy`` when any probe got a definitive negative answer and
    ``timeout`` when no probe got an answer at all. Probe errors never escape.
    """

    def __init__(self, probe: HealthProbe, clock: Clock):
        self._probe = probe
        self._clock = clock

    async def check(self, target: Target, config: HealthCheckConfig) -> HealthProbeResult:
        consecutive = 0
        saw_negative = False
        detail = None
        attempt = 0
        for attempt in range(1, config.max_attempts + 1):
            observation = await self._observe(target, config)
            if observation.timed_out:
                consecutive = 0
                detail = observation.detail or f"no response within {config.timeout_seconds}s"
            elif observation.status_code in config.expected_statuses:
                consecutive += 1
                if consecutive >= config.healthy_threshold:
                    logger.debug(
                        "Target %s healthy after %s attempt(s)", target.id, attempt
                    )
                    return self._result(target, "healthy", attempt, None)
            else:
                consecutive = 0
                saw_negative = True
                detail = observation.detail or f"unexpected status {observation.status_code}"

            if attempt < config.max_attempts:
                await self._clock.sleep(config.backoff_for(attempt))

        status: HealthStatusType = "unhealthy" if saw_negative else "timeout"
        if detail is None:
            detail = "healthy threshold not reached"
        logger.info("Target %s reported %s: %s", target.id, status, detail)
        return self._result(target, status, attempt, detail)

    async def ensure_healthy(self, target: Target, config: HealthCheckConfig) -> HealthProbeResult:
        """Like :meth:`check` but raises :class:`HealthCheckFailure` unless healthy."""
        result = await self.check(target, config)
        if not result.healthy:
            raise HealthCheckFailure(target.id, f"{result.status}: {result.detail}")
        return result

    async def _observe(self, target: Target, config: HealthCheckConfig) -> ProbeObservation:
        try:
            return await asyncio.wait_for(
                self._probe.probe(target, config), config.timeout_seconds
            )
        except asyncio.TimeoutError:
            return ProbeObservation(
                timed_out=True, detail=f"no response within {config.timeout_seconds}s"
            )
        except Exception as exc:
            logger.warning("Health probe for %s raised: %s", target.id, exc)
            return ProbeObservation(status_code=None, timed_out=False, detail=str(exc))

    def _result(
        self, target: Target, status: HealthStatusType, attempts: int, detail: Optional[str]
    ) -> HealthProbeResult:
        return HealthProbeResult(
            target_id=target.id,
            timestamp=self._clock.now(),
            status=status,
            attempts=attempts,
            detail=detail,
        )
