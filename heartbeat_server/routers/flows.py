# heartbeat_server/routers/flows.py
from datetime import datetime
from typing import Any, cast

from fastapi import APIRouter, Depends, HTTPException, Query, status

from dataflows.exceptions import FlowAlreadyExistsError
from heartbeat_server.auth import verify_api_key
from heartbeat_server.db.models import Flow, FlowRun, as_utc
from heartbeat_server.schemas.flows import (
    FlowCreateRequest,
    FlowListResponse,
    FlowResponse,
    FlowRunListResponse,
    FlowRunResponse,
    FlowUpdateRequest,
)
from heartbeat_server.services.flows import create_flow, delete_flow, get_flow, list_flows, update_flow
from heartbeat_server.services.runs import get_run, list_runs

router = APIRouter()


def _flow_to_response(flow: Flow) -> FlowResponse:
    """Convert Flow model to FlowResponse schema."""
    return FlowResponse(
        id=cast(int, flow.id),
        name=cast(str, flow.name),
        description=cast(str | None, flow.description),
        enabled=cast(bool, flow.enabled),
        configuration=cast(Any, flow.configuration),
        run_interval=cast(int, flow.run_interval),
        last_run_at=as_utc(cast(datetime | None, flow.last_run_at)),
        last_run_status=cast(str | None, flow.last_run_status),
        created_at=cast(datetime, flow.created_at),
        updated_at=cast(datetime, flow.updated_at),
    )


def _run_to_response(run: FlowRun) -> FlowRunResponse:
    """Convert FlowRun model to FlowRunResponse schema."""
    return FlowRunResponse(
        id=cast(int, run.id),
        flow_id=cast(int, run.flow_id),
        status=cast(str, run.status),
        started_at=as_utc(cast(datetime, run.started_at)),
        ended_at=as_utc(cast(datetime | None, run.ended_at)),
        duration=run.duration,
        error_message=cast(str | None, run.error_message),
        error_backtrace=cast(str | None, run.error_backtrace),
    )


def _get_flow_or_404(name: str) -> Flow:
    flow = get_flow(name)
    if not flow:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Flow not found")
    return flow


@router.post("/flows", response_model=FlowResponse, status_code=status.HTTP_201_CREATED)
def create_flow_endpoint(request: FlowCreateRequest, api_key: str = Depends(verify_api_key)):
    """Create a new flow."""
    try:
        flow = create_flow(
            name=request.name,
            run_interval=request.run_interval,
            configuration=request.configuration,
            enabled=request.enabled,
            description=request.description,
        )
    except FlowAlreadyExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    return _flow_to_response(_get_flow_or_404(cast(str, flow.name)))


@router.get("/flows", response_model=FlowListResponse)
def list_flows_endpoint(
    enabled: bool | None = Query(None, description="Filter by enabled state"),
    api_key: str = Depends(verify_api_key),
):
    """List flows."""
    flows = list_flows(enabled=enabled)
    return FlowListResponse(flows=[_flow_to_response(flow) for flow in flows])


@router.get("/flows/{name}", response_model=FlowResponse)
def get_flow_endpoint(name: str, api_key: str = Depends(verify_api_key)):
    """Get a flow and its last outcome."""
    return _flow_to_response(_get_flow_or_404(name))


@router.patch("/flows/{name}", response_model=FlowResponse)
def update_flow_endpoint(name: str, request: FlowUpdateRequest, api_key: str = Depends(verify_api_key)):
    """Enable/disable a flow or change its interval, configuration or description."""
    changes = {
        field: value
        for field, value in request.model_dump(exclude_unset=True).items()
        if value is not None or field == "description"
    }
    try:
        flow = update_flow(name, **changes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if not flow:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Flow not found")

    return _flow_to_response(_get_flow_or_404(name))


@router.delete("/flows/{name}", status_code=status.HTTP_204_NO_CONTENT)
def delete_flow_endpoint(name: str, api_key: str = Depends(verify_api_key)):
    """Delete a flow and its run history."""
    if not delete_flow(name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Flow not found")


@router.get("/flows/{name}/runs", response_model=FlowRunListResponse)
def list_flow_runs_endpoint(
    name: str,
    status_filter: str | None = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of runs to return"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    api_key: str = Depends(verify_api_key),
):
    """List a flow's runs, newest first."""
    flow = _get_flow_or_404(name)
    runs, total = list_runs(flow_id=cast(int, flow.id), status=status_filter, limit=limit, offset=offset)

    return FlowRunListResponse(
        runs=[_run_to_response(run) for run in runs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/runs/{run_id}", response_model=FlowRunResponse)
def get_run_endpoint(run_id: int, api_key: str = Depends(verify_api_key)):
    """Get one run."""
    run = get_run(run_id)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")

    return _run_to_response(run)
