# heartbeat_server/schemas/flows.py
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field

FlowConfigurationField = Union[str, Dict[str, Any]]


class FlowCreateRequest(BaseModel):
    """Request to create a new flow."""

    name: str = Field(..., min_length=1, description="Unique flow name")
    run_interval: int = Field(..., gt=0, description="Seconds between runs")
    configuration: FlowConfigurationField = Field(
        ..., description="Work unit name, or mapping with 'class_name' and parameters"
    )
    enabled: bool = Field(True, description="Disabled flows are never run")
    description: Optional[str] = Field(None, description="Optional description")


class FlowUpdateRequest(BaseModel):
    """Partial update of a flow definition."""

    run_interval: Optional[int] = Field(None, gt=0, description="Seconds between runs")
    configuration: Optional[FlowConfigurationField] = None
    enabled: Optional[bool] = None
    description: Optional[str] = None


class FlowResponse(BaseModel):
    """Flow definition and last outcome."""

    id: int
    name: str
    description: Optional[str] = None
    enabled: bool
    configuration: Optional[FlowConfigurationField] = None
    run_interval: int
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None  # "success", "failed", or None if never run
    created_at: datetime
    updated_at: datetime


class FlowListResponse(BaseModel):
    """List of flows."""

    flows: list[FlowResponse]


class FlowRunResponse(BaseModel):
    """One execution attempt of a flow."""

    id: int
    flow_id: int
    status: str  # "pending", "in_progress", "success", "failed"
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration: Optional[float] = None  # Seconds, None while running
    error_message: Optional[str] = None
    error_backtrace: Optional[str] = None


class FlowRunListResponse(BaseModel):
    """List of runs with pagination."""

    runs: list[FlowRunResponse]
    total: int
    limit: int
    offset: int
