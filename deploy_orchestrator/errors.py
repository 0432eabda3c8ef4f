"""Error taxonomy for the deployment orchestrator."""

from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class ValidationError(OrchestratorError):
    """The deployment request is malformed. Raised before any side effect."""


class ConflictError(OrchestratorError):
    """Another active request already owns one of the requested targets."""


class TargetError(OrchestratorError):
    """A failure confined to a single target."""

    def __init__(self, target_id: str, message: str):
        super().__init__(f"{target_id}: {message}")
        self.target_id = target_id
        self.message = message


class HealthCheckFailure(TargetError):
    """The target did not become healthy."""


class TrafficControlError(TargetError):
    """The routing layer rejected or failed a control call."""


class InstallError(TargetError):
    """The artifact installer hook failed."""


class RollbackFailure(TargetError):
    """A target could not be restored to its last known good version."""


class DeploymentTimeoutError(OrchestratorError, TimeoutError):
    """The global request deadline passed before the run finished."""


class DeploymentCancelled(OrchestratorError):
    """The run was cancelled by an operator."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "Deployment cancelled")
        self.reason = reason
