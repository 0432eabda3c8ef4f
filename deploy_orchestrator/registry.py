"""In-process registry of deployment targets."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from .errors import ValidationError
from .models import RoutingStateType, Target

logger = logging.getLogger(__name__)


class TargetRegistry:
    """Tracks targets, their deployed version and their routing state.

    Mutations of one target are serialized through a per-target lock; distinct
    targets never contend. Locks are created lazily and kept for the life of
    the process.
    """

    def __init__(self, targets: Iterable[Target] = ()):
        self._targets: dict[str, Target] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: set[str] = set()
        for target in targets:
            self.register(target)

    def register(self, target: Target) -> Target:
        existing = self._targets.get(target.id)
        if existing and not existing.retired:
            raise ValidationError(f"Target {target.id} is already registered")
        self._targets[target.id] = target.model_copy()
        logger.info("Registered target %s at %s:%s", target.id, target.address, target.port)
        return target.model_copy()

    def retire(self, target_id: str) -> None:
        """Mark a target retired. Targets are never deleted."""
        self._require(target_id).retired = True
        logger.info("Retired target %s", target_id)

    def lock(self, target_id: str) -> asyncio.Lock:
        lock = self._locks.get(target_id)
        if lock is None:
            lock = self._locks.setdefault(target_id, asyncio.Lock())
        return lock

    def get(self, target_id: str) -> Target:
        return self._require(target_id).model_copy()

    def contains(self, target_id: str) -> bool:
        return target_id in self._targets

    def list(self, group: Optional[str] = None) -> list[Target]:
        return [
            target.model_copy()
            for target in self._targets.values()
            if group is None or target.group == group
        ]

    def get_version(self, target_id: str) -> Optional[str]:
        return self._require(target_id).current_version

    async def set_version(self, target_id: str, version: str) -> None:
        async with self.lock(target_id):
            self._require(target_id).current_version = version

    async def mark_routing_state(self, target_id: str, state: RoutingStateType) -> None:
        async with self.lock(target_id):
            target = self._require(target_id)
            if state == "in_rotation" and target_id in self._in_flight:
                raise RuntimeError(
                    f"Target {target_id} has an unresolved deployment attempt"
                )
            target.routing_state = state

    async def begin_attempt(self, target_id: str) -> None:
        async with self.lock(target_id):
            self._require(target_id)
            self._in_flight.add(target_id)

    async def resolve_attempt(self, target_id: str) -> None:
        async with self.lock(target_id):
            self._in_flight.discard(target_id)

    def has_unresolved_attempt(self, target_id: str) -> bool:
        return target_id in self._in_flight

    def _require(self, target_id: str) -> Target:
        try:
            return self._targets[target_id]
        except KeyError:
            raise ValidationError(f"Unknown target {target_id}") from None
