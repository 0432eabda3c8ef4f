"""Canary deployment: a minority group first, observed before promotion."""

from __future__ import annotations

import math
from typing import Sequence

from deploy_orchestrator.application.context import DeploymentContext, StrategyRun
from deploy_orchestrator.application.strategies.rolling import roll_out
from deploy_orchestrator.application.strategies.steps import rollback_target
from deploy_orchestrator.errors import (
    DeploymentCancelled,
    DeploymentTimeoutError,
    TrafficControlError,
    ValidationError,
)
from deploy_orchestrator.models import CanaryConfig, DeploymentRequest, RunStateType, Target
from deploy_orchestrator.traffic import split_weights


def canary_size(config: CanaryConfig, total: int) -> int:
    if config.count is not None:
        return config.count
    return max(1, math.floor(total * config.fraction))


class CanaryStrategy:
    """Deploys to the canary group, watches its error rate, then promotes.

    A breach at any sample reverts the canary weight to zero and rolls the
    canary group back; targets outside the group are never touched. Without
    a breach the rest of the fleet is deployed with the rolling algorithm.
    """

    kind = "canary"

    def validate(self, request: DeploymentRequest, targets: Sequence[Target]) -> None:
        size = canary_size(request.config.canary, len(targets))
        if size * 2 >= len(targets):
            raise ValidationError(
                f"Canary group of {size} is not a minority of {len(targets)} targets"
            )
        not_serving = [t.id for t in targets if t.routing_state != "in_rotation"]
        if not_serving:
            raise ValidationError(
                f"Canary targets must be in rotation: {', '.join(not_serving)}"
            )

    async def run(self, ctx: DeploymentContext, run: StrategyRun) -> RunStateType:
        config = run.request.config.canary
        size = canary_size(config, len(run.target_ids))
        canary = run.target_ids[:size]
        rest = run.target_ids[size:]

        run.token.checkpoint()
        run.phase = "canary_deploy"
        try:
            run.weights_changed = True
            await ctx.traffic.set_weights(
                {**split_weights(canary, 0.0), **split_weights(rest, 100.0)}
            )
        except TrafficControlError as exc:
            run.halt(f"could not isolate canary group: {exc.message}")
            return run.terminal_state()

        try:
            deployed = await roll_out(ctx, run, canary, label="canary batch")
        except (DeploymentTimeoutError, DeploymentCancelled):
            run.provisional.update(self._succeeded(run, canary))
            raise
        if not deployed:
            await self._revert(ctx, run, canary, rest, run.error_detail or "canary failed")
            return run.terminal_state()
        # Canary targets stay provisional until the observation window passes.
        run.provisional.update(canary)

        window = config.observation_samples * config.sample_interval_seconds
        for weight in config.weight_schedule:
            run.token.checkpoint()
            run.phase = f"observe {weight:g}%"
            try:
                await ctx.traffic.set_weights(
                    {**split_weights(canary, weight), **split_weights(rest, 100.0 - weight)}
                )
            except TrafficControlError as exc:
                await self._revert(ctx, run, canary, rest, exc.message)
                return run.terminal_state()

            for sample in range(1, config.observation_samples + 1):
                run.token.checkpoint()
                rate = await self._sample(ctx, canary, window)
                run.samples.append(rate)
                ctx.logger.debug(
                    "Canary sample %s/%s at %g%%: error rate %.4f",
                    sample,
                    config.observation_samples,
                    weight,
                    rate,
                )
                if rate > config.error_rate_threshold:
                    run.error_count += 1
                    reason = (
                        f"error rate {rate:.2%} exceeded threshold "
                        f"{config.error_rate_threshold:.2%} at sample {sample}"
                    )
                    await self._revert(ctx, run, canary, rest, reason)
                    return run.terminal_state()
                if sample < config.observation_samples:
                    await ctx.clock.sleep(config.sample_interval_seconds)

        run.phase = "promote"
        ctx.logger.info("Canary healthy; promoting %s to remaining targets", run.artifact)
        try:
            await ctx.traffic.set_weights(split_weights(run.target_ids, 100.0))
        except TrafficControlError as exc:
            await self._revert(ctx, run, canary, rest, exc.message)
            return run.terminal_state()
        run.provisional.difference_update(canary)
        await roll_out(ctx, run, rest, label="promotion batch")
        return run.terminal_state()

    async def _sample(self, ctx: DeploymentContext, canary: list[str], window: float) -> float:
        try:
            return await ctx.metrics.error_rate(canary, window)
        except Exception as exc:
            # An unreadable feed counts as a breach.
            ctx.logger.error("Metrics feed unavailable: %s", exc)
            return math.inf

    async def _revert(
        self,
        ctx: DeploymentContext,
        run: StrategyRun,
        canary: list[str],
        rest: list[str],
        reason: str,
    ) -> None:
        ctx.logger.warning("Reverting canary group: %s", reason)
        run.halt(reason)
        try:
            await ctx.traffic.set_weights(
                {**split_weights(canary, 0.0), **split_weights(rest, 100.0)}
            )
        except TrafficControlError as exc:
            ctx.logger.error("Could not zero canary weight: %s", exc)
        for target_id in canary:
            if target_id in self._succeeded(run, canary):
                await rollback_target(ctx, run, target_id, reason=reason)
        try:
            await ctx.traffic.set_weights(split_weights(run.target_ids, 100.0))
        except TrafficControlError as exc:
            ctx.logger.error("Could not restore even weights: %s", exc)

    @staticmethod
    def _succeeded(run: StrategyRun, target_ids: list[str]) -> list[str]:
        succeeded = []
        for target_id in target_ids:
            result = run.results.get(target_id)
            if result is not None and result.outcome == "success" and not result.rolled_back:
                succeeded.append(target_id)
        return succeeded
