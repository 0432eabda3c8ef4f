"""JSON API endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ..application.ports import VersionStore
from ..application.services.orchestrator import Orchestrator
from ..errors import ConflictError, ValidationError
from ..models import DeploymentOutcome, DeploymentRequest, Target
from ..registry import TargetRegistry

router = APIRouter(prefix="/api", tags=["api"])


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_registry(request: Request) -> TargetRegistry:
    return request.app.state.registry


def get_version_store(request: Request) -> VersionStore:
    return request.app.state.orchestrator.context.version_store


@router.get("/targets")
def list_targets(
    group: Optional[str] = None,
    registry: TargetRegistry = Depends(get_registry),
) -> list[dict[str, Any]]:
    return [target.model_dump() for target in registry.list(group)]


@router.post("/targets", status_code=status.HTTP_201_CREATED)
def register_target(
    target: Target,
    registry: TargetRegistry = Depends(get_registry),
) -> dict[str, Any]:
    try:
        return registry.register(target).model_dump()
    except ValidationError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/targets/{target_id}/retire", status_code=status.HTTP_204_NO_CONTENT)
def retire_target(
    target_id: str,
    registry: TargetRegistry = Depends(get_registry),
) -> None:
    try:
        registry.retire(target_id)
    except ValidationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/targets/{target_id}/records")
def list_records(
    target_id: str,
    version_store: VersionStore = Depends(get_version_store),
) -> dict[str, Any]:
    records = version_store.list_records(target_id)
    last_success = version_store.last_success(target_id)
    return {
        "records": [record.model_dump() for record in records],
        "last_success": last_success.model_dump() if last_success else None,
    }


@router.post("/deployments", response_model=DeploymentOutcome)
async def submit_deployment(
    request_body: DeploymentRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Any:
    try:
        return await orchestrator.submit(request_body)
    except ValidationError as exc:
        return _rejected(request_body, status.HTTP_400_BAD_REQUEST, str(exc))
    except ConflictError as exc:
        return _rejected(request_body, status.HTTP_409_CONFLICT, str(exc))


@router.get("/deployments/{request_id}", response_model=DeploymentOutcome)
def get_deployment(
    request_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> DeploymentOutcome:
    outcome = orchestrator.get_outcome(request_id)
    if not outcome:
        raise HTTPException(status_code=404, detail="Deployment not found")
    return outcome


@router.post("/deployments/{request_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
def cancel_deployment(
    request_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, str]:
    if not orchestrator.cancel(request_id):
        raise HTTPException(status_code=404, detail="No active deployment with that id")
    return {"request_id": request_id, "status": "cancelling"}


def _rejected(request_body: DeploymentRequest, code: int, detail: str) -> JSONResponse:
    outcome = DeploymentOutcome(
        request_id=request_body.id,
        strategy=request_body.strategy,
        status="rejected",
        error_detail=detail,
    )
    return JSONResponse(status_code=code, content=outcome.model_dump(mode="json"))
