"""Cooperative cancellation with explicit deadlines."""

from __future__ import annotations

from typing import Optional

from deploy_orchestrator.application.ports import Clock
from deploy_orchestrator.errors import DeploymentCancelled, DeploymentTimeoutError


class CancellationToken:
    """Flag plus deadline checked between discrete units of work.

    Nothing here interrupts a running step; ``checkpoint`` only stops the next
    one from starting.
    """

    def __init__(self, clock: Clock, timeout_seconds: Optional[float] = None):
        self._clock = clock
        self._deadline = (
            clock.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )
        self._timeout_seconds = timeout_seconds
        self._reason: Optional[str] = None

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if self._reason is None:
            self._reason = reason

    def expired(self) -> bool:
        return self._deadline is not None and self._clock.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock.monotonic())

    def checkpoint(self) -> None:
        if self._reason is not None:
            raise DeploymentCancelled(self._reason)
        if self.expired():
            raise DeploymentTimeoutError(
                f"Request deadline of {self._timeout_seconds}s exceeded"
            )
