"""Blue-green deployment: prepare the standby pool, then cut over atomically."""

from __future__ import annotations

import asyncio
from typing import Sequence

from deploy_orchestrator.application.context import DeploymentContext, StrategyRun
from deploy_orchestrator.application.strategies.steps import (
    commit_success,
    install_and_verify,
    record_failure,
    rollback_target,
)
from deploy_orchestrator.errors import TrafficControlError, ValidationError
from deploy_orchestrator.models import DeploymentRequest, RunStateType, Target, TargetOutcome
from deploy_orchestrator.traffic import split_weights


def split_pools(
    request: DeploymentRequest, targets: Sequence[Target]
) -> tuple[list[str], list[str]]:
    """Return ``(active, standby)`` target ids, preserving request order."""
    explicit = request.config.blue_green.standby
    if explicit is not None:
        standby_ids = set(explicit)
        standby = [t.id for t in targets if t.id in standby_ids]
    else:
        standby = [t.id for t in targets if t.routing_state != "in_rotation"]
    active = [t.id for t in targets if t.id not in set(standby)]
    return active, standby


class BlueGreenStrategy:
    """Deploys to the whole standby pool and only then shifts traffic.

    A single unhealthy standby member aborts the cutover: the standby pool is
    rolled back and the active pool keeps serving untouched.
    """

    kind = "blue_green"

    def validate(self, request: DeploymentRequest, targets: Sequence[Target]) -> None:
        explicit = request.config.blue_green.standby
        if explicit is not None:
            unknown = sorted(set(explicit) - {t.id for t in targets})
            if unknown:
                raise ValidationError(
                    f"Standby targets not part of the request: {', '.join(unknown)}"
                )
            serving = sorted(
                t.id
                for t in targets
                if t.id in set(explicit) and t.routing_state == "in_rotation"
            )
            if serving:
                raise ValidationError(
                    f"Standby targets are still in rotation: {', '.join(serving)}"
                )
        active, standby = split_pools(request, targets)
        if not standby:
            raise ValidationError("Blue-green deployment requires a non-empty standby pool")
        if not active:
            raise ValidationError("Blue-green deployment requires a non-empty active pool")

    async def run(self, ctx: DeploymentContext, run: StrategyRun) -> RunStateType:
        targets = [ctx.registry.get(tid) for tid in run.target_ids]
        active, standby = split_pools(run.request, targets)

        run.token.checkpoint()
        run.phase = "prepare_standby"
        ctx.logger.info("Preparing standby pool %s with %s", ", ".join(standby), run.artifact)
        failures = await asyncio.gather(
            *(install_and_verify(ctx, run, tid) for tid in standby)
        )

        failed = {tid: failure for tid, failure in zip(standby, failures) if failure}
        if failed:
            for target_id, (outcome, detail) in failed.items():
                await record_failure(ctx, run, target_id, outcome, detail)
            for target_id in standby:
                if target_id not in failed:
                    await commit_success(ctx, run, target_id)
            reason = f"cutover aborted: {', '.join(sorted(failed))} not healthy"
            await self._abort(ctx, run, standby, reason)
            return run.terminal_state()

        run.token.checkpoint()
        run.phase = "cutover"
        for target_id in standby:
            await commit_success(ctx, run, target_id)

        restored: list[str] = []
        try:
            run.weights_changed = True
            await ctx.traffic.set_weights(
                {**split_weights(active, 100.0), **split_weights(standby, 0.0)}
            )
            for target_id in standby:
                await ctx.traffic.restore(ctx.registry.get(target_id))
                restored.append(target_id)
                await ctx.registry.mark_routing_state(target_id, "in_rotation")
            await ctx.traffic.set_weights(
                {**split_weights(standby, 100.0), **split_weights(active, 0.0)}
            )
        except TrafficControlError as exc:
            await self._revert_routing(ctx, active, restored)
            await self._abort(ctx, run, standby, f"cutover aborted: {exc.message}")
            return run.terminal_state()

        run.provisional.difference_update(standby)
        ctx.logger.info("Traffic shifted to %s", ", ".join(standby))

        run.phase = "drain_previous_active"
        for target_id in active:
            target = ctx.registry.get(target_id)
            try:
                await ctx.registry.mark_routing_state(target_id, "draining")
                await ctx.traffic.drain(target)
            except TrafficControlError as exc:
                ctx.logger.error("Previous active %s did not drain: %s", target_id, exc)
                await ctx.registry.mark_routing_state(target_id, "in_rotation")
                run.results.setdefault(target_id, self._untouched(target)).error = exc.message
                if run.error_detail is None:
                    run.error_detail = f"{target_id} still registered: {exc.message}"
                continue
            await ctx.registry.mark_routing_state(target_id, "drained")
        return run.terminal_state()

    async def _abort(
        self, ctx: DeploymentContext, run: StrategyRun, standby: list[str], reason: str
    ) -> None:
        ctx.logger.warning("%s; rolling back standby pool", reason)
        run.halt(reason)
        for target_id in standby:
            await rollback_target(ctx, run, target_id, reason=reason)

    async def _revert_routing(
        self, ctx: DeploymentContext, active: list[str], restored: list[str]
    ) -> None:
        try:
            await ctx.traffic.set_weights(split_weights(active, 100.0))
        except TrafficControlError as exc:
            ctx.logger.error("Could not return traffic to the active pool: %s", exc)
        for target_id in restored:
            target = ctx.registry.get(target_id)
            await ctx.registry.mark_routing_state(target_id, "draining")
            try:
                await ctx.traffic.drain(target)
            except TrafficControlError as exc:
                ctx.logger.error("Could not drain %s after aborted cutover: %s", target_id, exc)
            await ctx.registry.mark_routing_state(target_id, "drained")

    @staticmethod
    def _untouched(target: Target) -> TargetOutcome:
        return TargetOutcome(target_id=target.id, final_version=target.current_version)
