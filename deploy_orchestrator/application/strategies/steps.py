"""Per-target deployment steps shared by every strategy."""

from __future__ import annotations

from typing import Optional

from deploy_orchestrator.application.context import DeploymentContext, StrategyRun
from deploy_orchestrator.errors import (
    HealthCheckFailure,
    InstallError,
    RollbackFailure,
    TrafficControlError,
)
from deploy_orchestrator.models import (
    DeploymentRecord,
    RecordOutcomeType,
    Target,
    TargetOutcome,
)

StepFailure = tuple[RecordOutcomeType, str]


def record_attempt(
    ctx: DeploymentContext,
    run: StrategyRun,
    target_id: str,
    *,
    outcome: RecordOutcomeType,
    attempted_version: str,
    previous_version: Optional[str],
    detail: Optional[str] = None,
) -> DeploymentRecord:
    now = ctx.clock.now()
    record = DeploymentRecord(
        request_id=run.request.id,
        target_id=target_id,
        previous_version=previous_version,
        attempted_version=attempted_version,
        outcome=outcome,
        detail=detail,
        started_at=run.attempt_started.pop(target_id, now),
        completed_at=now,
    )
    return ctx.version_store.record(record)


async def install_artifact(ctx: DeploymentContext, target: Target, artifact: str) -> None:
    """Run the installer hook, reporting any failure as :class:`InstallError`."""
    try:
        await ctx.installer.install(target, artifact)
    except InstallError:
        raise
    except Exception as exc:
        raise InstallError(target.id, f"{type(exc).__name__}: {exc}") from exc


async def install_and_verify(
    ctx: DeploymentContext, run: StrategyRun, target_id: str
) -> Optional[StepFailure]:
    """Install the run's artifact and health-check it.

    Leaves the attempt unresolved; the caller commits or records the failure.
    Returns ``None`` when the target came up healthy.
    """
    target = ctx.registry.get(target_id)
    await ctx.registry.begin_attempt(target_id)
    run.attempt_started[target_id] = ctx.clock.now()
    run.provisional.add(target_id)
    ctx.logger.info("Installing %s on %s", run.artifact, target_id)
    try:
        await install_artifact(ctx, target, run.artifact)
    except InstallError as exc:
        ctx.logger.warning("Install of %s on %s failed: %s", run.artifact, target_id, exc)
        return "failed_install", exc.message

    result = await ctx.health_checker.check(target, run.request.config.health_check)
    if not result.healthy:
        return "failed_health_check", f"{result.status}: {result.detail}"
    return None


async def commit_success(ctx: DeploymentContext, run: StrategyRun, target_id: str) -> None:
    record_attempt(
        ctx,
        run,
        target_id,
        outcome="success",
        attempted_version=run.artifact,
        previous_version=run.initial_versions.get(target_id),
    )
    await ctx.registry.set_version(target_id, run.artifact)
    await ctx.registry.resolve_attempt(target_id)
    run.results[target_id] = TargetOutcome(
        target_id=target_id, final_version=run.artifact, outcome="success"
    )


async def record_failure(
    ctx: DeploymentContext,
    run: StrategyRun,
    target_id: str,
    outcome: RecordOutcomeType,
    detail: str,
) -> None:
    record_attempt(
        ctx,
        run,
        target_id,
        outcome=outcome,
        attempted_version=run.artifact,
        previous_version=run.initial_versions.get(target_id),
        detail=detail,
    )
    await ctx.registry.resolve_attempt(target_id)
    run.results[target_id] = TargetOutcome(
        target_id=target_id,
        final_version=ctx.registry.get_version(target_id),
        outcome=outcome,
        error=detail,
    )


def resolve_rollback_version(
    ctx: DeploymentContext, run: StrategyRun, target_id: str
) -> Optional[str]:
    """Last known good version for a target, excluding the run's artifact."""
    last_good = ctx.version_store.last_success(target_id, exclude_version=run.artifact)
    if last_good is not None:
        return last_good.attempted_version
    return run.initial_versions.get(target_id)


async def deploy_target(ctx: DeploymentContext, run: StrategyRun, target_id: str) -> bool:
    """Drain, install, verify, commit and restore one target.

    Any failure rolls the target back before returning ``False``.
    """
    target = ctx.registry.get(target_id)
    was_in_rotation = target.routing_state == "in_rotation"
    if was_in_rotation:
        await ctx.registry.mark_routing_state(target_id, "draining")
        try:
            await ctx.traffic.drain(target)
        except TrafficControlError as exc:
            # Nothing was installed; the target keeps serving its old version.
            await ctx.registry.mark_routing_state(target_id, "in_rotation")
            run.results[target_id] = TargetOutcome(
                target_id=target_id,
                final_version=target.current_version,
                outcome="failed_routing",
                error=exc.message,
            )
            ctx.logger.warning("Skipping %s: %s", target_id, exc)
            return False
        await ctx.registry.mark_routing_state(target_id, "drained")

    failure = await install_and_verify(ctx, run, target_id)
    if failure is not None:
        outcome, detail = failure
        await record_failure(ctx, run, target_id, outcome, detail)
        await rollback_target(ctx, run, target_id, reason=detail)
        return False

    await commit_success(ctx, run, target_id)
    if run.initial_routing.get(target_id) == "in_rotation":
        try:
            await ctx.traffic.restore(target)
        except TrafficControlError as exc:
            run.results[target_id].outcome = "failed_routing"
            run.results[target_id].error = exc.message
            await rollback_target(ctx, run, target_id, reason=exc.message)
            return False
        await ctx.registry.mark_routing_state(target_id, "in_rotation")
    run.provisional.discard(target_id)
    ctx.logger.info("Target %s now serving %s", target_id, run.artifact)
    return True


async def rollback_target(
    ctx: DeploymentContext, run: StrategyRun, target_id: str, *, reason: str
) -> bool:
    """Restore a target to its last known good version.

    Not cancellable. The target's routing state is returned to what it was
    when the run started. Returns ``False`` (and records ``failed_rollback``)
    when the target could not be restored.
    """
    run.provisional.discard(target_id)
    target = ctx.registry.get(target_id)
    outcome = run.results.get(target_id) or TargetOutcome(
        target_id=target_id, final_version=target.current_version
    )
    run.results[target_id] = outcome
    version = resolve_rollback_version(ctx, run, target_id)
    if version is None:
        detail = "no last known good version to restore"
        ctx.logger.error("Rollback of %s impossible: %s", target_id, detail)
        outcome.outcome = "failed_rollback"
        outcome.error = detail
        run.rollback_failures.append(target_id)
        return False

    ctx.logger.warning("Rolling back %s to %s (%s)", target_id, version, reason)
    await ctx.registry.begin_attempt(target_id)
    run.attempt_started[target_id] = ctx.clock.now()
    try:
        if target.routing_state != "drained":
            await ctx.registry.mark_routing_state(target_id, "draining")
            await ctx.traffic.drain(target)
            await ctx.registry.mark_routing_state(target_id, "drained")
        await install_artifact(ctx, target, version)
        await ctx.health_checker.ensure_healthy(target, run.request.config.health_check)
        record_attempt(
            ctx,
            run,
            target_id,
            outcome="success",
            attempted_version=version,
            previous_version=run.artifact,
            detail=f"rollback: {reason}",
        )
        await ctx.registry.set_version(target_id, version)
        await ctx.registry.resolve_attempt(target_id)
        if run.initial_routing.get(target_id) == "in_rotation":
            await ctx.traffic.restore(target)
            await ctx.registry.mark_routing_state(target_id, "in_rotation")
    except (InstallError, TrafficControlError, HealthCheckFailure) as exc:
        failure = RollbackFailure(target_id, f"restoring {version}: {exc.message}")
        record_attempt(
            ctx,
            run,
            target_id,
            outcome="failed_rollback",
            attempted_version=version,
            previous_version=run.artifact,
            detail=failure.message,
        )
        await ctx.registry.resolve_attempt(target_id)
        ctx.logger.error("Rollback failed: %s", failure)
        outcome.outcome = "failed_rollback"
        outcome.error = failure.message
        outcome.final_version = ctx.registry.get_version(target_id)
        run.rollback_failures.append(target_id)
        return False

    outcome.rolled_back = True
    outcome.final_version = version
    if outcome.error is None:
        outcome.error = reason
    return True
