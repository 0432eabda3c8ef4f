"""Top-level deployment orchestration service."""

from __future__ import annotations

import asyncio
from typing import Optional, Protocol, Sequence

from deploy_orchestrator.application.cancellation import CancellationToken
from deploy_orchestrator.application.context import DeploymentContext, StrategyRun
from deploy_orchestrator.application.strategies.blue_green import BlueGreenStrategy
from deploy_orchestrator.application.strategies.canary import CanaryStrategy
from deploy_orchestrator.application.strategies.rolling import RollingStrategy
from deploy_orchestrator.application.strategies.steps import record_attempt, rollback_target
from deploy_orchestrator.errors import (
    ConflictError,
    DeploymentCancelled,
    DeploymentTimeoutError,
    TrafficControlError,
    ValidationError,
)
from deploy_orchestrator.models import (
    DeploymentOutcome,
    DeploymentRequest,
    OutcomeStatusType,
    RecordOutcomeType,
    RunStateType,
    Target,
    TargetOutcome,
)
from deploy_orchestrator.traffic import split_weights

_STATUS_FOR_STATE: dict[str, OutcomeStatusType] = {
    "succeeded": "succeeded",
    "rolled_back": "rolled_back",
    "failed": "failed",
}


class DeploymentStrategy(Protocol):
    """One deployment style, driven to a terminal state by ``run``."""

    kind: str

    def validate(self, request: DeploymentRequest, targets: Sequence[Target]) -> None:
        ...

    async def run(self, ctx: DeploymentContext, run: StrategyRun) -> RunStateType:
        ...


def default_strategies() -> dict[str, DeploymentStrategy]:
    strategies: list[DeploymentStrategy] = [
        BlueGreenStrategy(),
        RollingStrategy(),
        CanaryStrategy(),
    ]
    return {strategy.kind: strategy for strategy in strategies}


class Orchestrator:
    """Accepts deployment requests and drives the chosen strategy to completion.

    Requests are validated before anything is touched. A request whose target
    set overlaps an active request is rejected with :class:`ConflictError`.
    When the request deadline passes or an operator cancels, every target
    still holding an unconfirmed new version is rolled back.
    """

    def __init__(
        self,
        context: DeploymentContext,
        *,
        default_timeout_seconds: Optional[float] = 600.0,
        strategies: Optional[dict[str, DeploymentStrategy]] = None,
    ):
        self._ctx = context
        self._default_timeout = default_timeout_seconds
        self._strategies = strategies or default_strategies()
        self._lock = asyncio.Lock()
        self._reservations: dict[str, str] = {}
        self._runs: dict[str, StrategyRun] = {}
        self._outcomes: dict[str, DeploymentOutcome] = {}

    @property
    def context(self) -> DeploymentContext:
        return self._ctx

    def active_requests(self) -> list[str]:
        return sorted(self._runs)

    def get_outcome(self, request_id: str) -> Optional[DeploymentOutcome]:
        return self._outcomes.get(request_id)

    def cancel(self, request_id: str, reason: str = "cancelled by operator") -> bool:
        run = self._runs.get(request_id)
        if run is None:
            return False
        self._ctx.logger.warning("Cancellation requested for %s: %s", request_id, reason)
        run.token.cancel(reason)
        return True

    async def submit(self, request: DeploymentRequest) -> DeploymentOutcome:
        """Run ``request`` to a terminal state.

        Raises :class:`ValidationError` or :class:`ConflictError` before any
        side effect; every other failure is reported in the outcome.
        """
        try:
            strategy, targets = self._validate(request)
        except ValidationError as exc:
            self._ctx.logger.warning("Rejected request %s: %s", request.id, exc)
            raise
        target_ids = [target.id for target in targets]

        async with self._lock:
            conflict = self._find_conflict(request.id, target_ids)
            if conflict:
                self._ctx.logger.warning("Rejected request %s: %s", request.id, conflict)
                raise ConflictError(conflict)
            timeout = request.config.timeout_seconds or self._default_timeout
            run = StrategyRun(
                request=request,
                target_ids=target_ids,
                token=CancellationToken(self._ctx.clock, timeout),
                initial_versions={t.id: t.current_version for t in targets},
                initial_routing={t.id: t.routing_state for t in targets},
            )
            for target_id in target_ids:
                self._reservations[target_id] = request.id
            self._runs[request.id] = run

        try:
            outcome = await self._execute(strategy, run)
        finally:
            async with self._lock:
                for target_id in target_ids:
                    self._reservations.pop(target_id, None)
                self._runs.pop(request.id, None)
        self._outcomes[request.id] = outcome
        return outcome

    def _find_conflict(self, request_id: str, target_ids: list[str]) -> Optional[str]:
        if request_id in self._runs:
            return f"Request {request_id} is already in progress"
        overlap = sorted(tid for tid in target_ids if tid in self._reservations)
        if not overlap:
            return None
        owners = sorted({self._reservations[tid] for tid in overlap})
        return f"Targets {', '.join(overlap)} are owned by request(s) {', '.join(owners)}"

    def _validate(
        self, request: DeploymentRequest
    ) -> tuple[DeploymentStrategy, list[Target]]:
        strategy = self._strategies.get(request.strategy)
        if strategy is None:
            raise ValidationError(
                f"Unknown strategy {request.strategy!r}; "
                f"expected one of {', '.join(sorted(self._strategies))}"
            )
        registry = self._ctx.registry
        if request.targets:
            ids = list(request.targets)
        elif request.group:
            ids = [target.id for target in registry.list(request.group) if not target.retired]
        else:
            ids = []
        if not ids:
            raise ValidationError("Deployment request has an empty target set")
        if len(set(ids)) != len(ids):
            raise ValidationError("Deployment request lists a target more than once")
        unknown = [tid for tid in ids if not registry.contains(tid)]
        if unknown:
            raise ValidationError(f"Unknown targets: {', '.join(unknown)}")
        targets = [registry.get(tid) for tid in ids]
        retired = [t.id for t in targets if t.retired]
        if retired:
            raise ValidationError(f"Retired targets cannot be deployed: {', '.join(retired)}")
        strategy.validate(request, targets)
        return strategy, targets

    async def _execute(self, strategy: DeploymentStrategy, run: StrategyRun) -> DeploymentOutcome:
        ctx = self._ctx
        request = run.request
        started_at = ctx.clock.now()
        run.state = "in_progress"
        ctx.logger.info(
            "Deployment %s started: %s of %s to %s target(s)",
            request.id,
            request.strategy,
            request.artifact,
            len(run.target_ids),
        )
        status: OutcomeStatusType
        try:
            run.state = await strategy.run(ctx, run)
            status = _STATUS_FOR_STATE[run.state]
            if run.state != "succeeded" and run.token.expired():
                # The strategy already aborted and rolled back; the deadline still decides.
                ctx.logger.error(
                    "Deployment %s passed its deadline during %s", request.id, run.phase
                )
                status = "timed_out"
                if run.error_detail is None:
                    run.error_detail = "Request deadline exceeded before the run finished"
        except DeploymentTimeoutError as exc:
            ctx.logger.error("Deployment %s timed out during %s", request.id, run.phase)
            run.error_detail = str(exc)
            await self._abort(run, "timed_out", str(exc))
            run.state = "failed" if run.rollback_failures else "rolled_back"
            status = "timed_out"
        except DeploymentCancelled as exc:
            run.error_detail = str(exc)
            await self._abort(run, "cancelled", str(exc))
            run.state = "failed" if run.rollback_failures else "rolled_back"
            status = _STATUS_FOR_STATE[run.state]

        if run.rollback_failures:
            failures = ", ".join(run.rollback_failures)
            detail = f"rollback failed for {failures}; manual remediation required"
            run.error_detail = f"{run.error_detail}; {detail}" if run.error_detail else detail

        outcome = DeploymentOutcome(
            request_id=request.id,
            strategy=request.strategy,
            status=status,
            per_target=[self._target_outcome(run, tid) for tid in run.target_ids],
            error_detail=run.error_detail,
            started_at=started_at,
            completed_at=ctx.clock.now(),
        )
        ctx.logger.info("Deployment %s finished: %s", request.id, outcome.status)
        return outcome

    async def _abort(self, run: StrategyRun, outcome: RecordOutcomeType, reason: str) -> None:
        """Roll back every target still holding an unconfirmed new version."""
        ctx = self._ctx
        for target_id in sorted(run.provisional):
            if ctx.registry.has_unresolved_attempt(target_id):
                record_attempt(
                    ctx,
                    run,
                    target_id,
                    outcome=outcome,
                    attempted_version=run.artifact,
                    previous_version=run.initial_versions.get(target_id),
                    detail=reason,
                )
                await ctx.registry.resolve_attempt(target_id)
                run.results[target_id] = TargetOutcome(
                    target_id=target_id,
                    final_version=ctx.registry.get_version(target_id),
                    outcome=outcome,
                    error=reason,
                )
            await rollback_target(ctx, run, target_id, reason=reason)

        if run.request.config.rollback_completed_on_failure:
            for target_id, result in list(run.results.items()):
                if result.outcome == "success" and not result.rolled_back:
                    await rollback_target(ctx, run, target_id, reason=reason)

        if run.weights_changed:
            serving = [
                tid
                for tid in run.target_ids
                if ctx.registry.get(tid).routing_state == "in_rotation"
            ]
            try:
                await ctx.traffic.set_weights(split_weights(serving, 100.0))
            except TrafficControlError as exc:
                ctx.logger.error("Could not reset traffic weights: %s", exc)

    def _target_outcome(self, run: StrategyRun, target_id: str) -> TargetOutcome:
        current = self._ctx.registry.get_version(target_id)
        result = run.results.get(target_id)
        if result is None:
            return TargetOutcome(target_id=target_id, final_version=current)
        return result.model_copy(update={"final_version": current})
