"""Clock adapter for application services."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone

from deploy_orchestrator.application.ports import Clock


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)
