"""Rolling deployment: fixed-size batches, one batch in flight at a time.

Rolling is not all-or-nothing. When a target fails, the run stops advancing,
the failed target is rolled back to its last known good version, targets that
already succeeded keep the new version and targets not yet reached are left
untouched. Setting ``rollback_completed_on_failure`` also reverts the targets
that already succeeded in this run.
"""

from __future__ import annotations

import asyncio
from typing import Sequence

from deploy_orchestrator.application.context import DeploymentContext, StrategyRun
from deploy_orchestrator.application.strategies.steps import deploy_target, rollback_target
from deploy_orchestrator.models import DeploymentRequest, RunStateType, Target


def plan_batches(target_ids: Sequence[str], batch_size: int) -> list[list[str]]:
    """Split targets into consecutive batches."""
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")
    ordered = list(target_ids)
    return [ordered[i : i + batch_size] for i in range(0, len(ordered), batch_size)]


async def roll_out(
    ctx: DeploymentContext, run: StrategyRun, target_ids: Sequence[str], *, label: str = "batch"
) -> bool:
    """Deploy ``target_ids`` batch by batch. Returns ``False`` if any target failed."""
    config = run.request.config
    batches = plan_batches(target_ids, config.batch_size)
    for index, batch in enumerate(batches, start=1):
        run.token.checkpoint()
        run.phase = f"{label} {index}/{len(batches)}"
        ctx.logger.info("Starting %s with %s", run.phase, ", ".join(batch))
        outcomes = await asyncio.gather(*(deploy_target(ctx, run, tid) for tid in batch))
        run.processed.extend(batch)
        if all(outcomes):
            continue

        failed = [tid for tid, ok in zip(batch, outcomes) if not ok]
        run.halt(f"{', '.join(failed)} failed during {run.phase}")
        ctx.logger.warning(
            "Stopping rollout after %s; %s target(s) left untouched",
            run.phase,
            len(run.remaining),
        )
        if config.rollback_completed_on_failure:
            await _revert_completed(ctx, run)
        return False
    return True


async def _revert_completed(ctx: DeploymentContext, run: StrategyRun) -> None:
    completed = [
        tid
        for tid, result in run.results.items()
        if result.outcome == "success" and not result.rolled_back
    ]
    for target_id in completed:
        await rollback_target(ctx, run, target_id, reason="rollout aborted")


class RollingStrategy:
    kind = "rolling"

    def validate(self, request: DeploymentRequest, targets: Sequence[Target]) -> None:
        return None

    async def run(self, ctx: DeploymentContext, run: StrategyRun) -> RunStateType:
        await roll_out(ctx, run, run.target_ids)
        return run.terminal_state()
