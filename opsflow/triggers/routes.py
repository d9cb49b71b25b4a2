"""Trigger ingress and run HTTP routes."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from opsflow.executor.errors import (
    ConfigurationError,
    ExecutionError,
    RunNotFoundError,
    TriggerAuthenticationError,
    WorkflowNotFoundError,
)
from opsflow.runs.schemas import RunResponse, TriggerResponse
from opsflow.services import Services

logger = structlog.get_logger()

router = APIRouter()


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return services


def to_http_error(error: ExecutionError) -> HTTPException:
    """Map execution errors raised at ingress to HTTP errors."""
    if isinstance(error, TriggerAuthenticationError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=error.message)
    if isinstance(error, (WorkflowNotFoundError, RunNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)
    if isinstance(error, ConfigurationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=error.to_dict(),
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.message)


@router.post(
    "/hooks/{workflow_id}",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Triggers"],
)
async def receive_webhook(
    workflow_id: str,
    request: Request,
    services: Services = Depends(get_services),
) -> TriggerResponse:
    """Start a run of one workflow from a webhook call."""
    body = await request.body()
    try:
        return await services.adapter.handle_webhook(
            workflow_id,
            body,
            request.headers,
            dict(request.query_params),
            request.method,
        )
    except ExecutionError as e:
        raise to_http_error(e) from e


@router.post(
    "/events/{kind}",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Triggers"],
)
async def receive_event(
    kind: str,
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
    services: Services = Depends(get_services),
) -> TriggerResponse:
    """Start runs of every workflow listening for a domain event."""
    body = await request.body()
    try:
        return await services.adapter.handle_event(kind, body, request.headers, user_id=user_id)
    except ExecutionError as e:
        raise to_http_error(e) from e


@router.get("/runs/{run_id}", response_model=RunResponse, tags=["Runs"])
async def get_run(run_id: str, services: Services = Depends(get_services)) -> RunResponse:
    try:
        record = await services.orchestrator.get_run(run_id)
    except RunNotFoundError as e:
        raise to_http_error(e) from e
    return RunResponse.from_record(record)


@router.post("/runs/{run_id}/cancel", response_model=RunResponse, tags=["Runs"])
async def cancel_run(run_id: str, services: Services = Depends(get_services)) -> RunResponse:
    try:
        record = await services.orchestrator.cancel_run(run_id)
    except RunNotFoundError as e:
        raise to_http_error(e) from e
    return RunResponse.from_record(record)
