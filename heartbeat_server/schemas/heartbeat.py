# heartbeat_server/schemas/heartbeat.py
from pydantic import BaseModel, Field


class HeartbeatResponse(BaseModel):
    """Summary of one heartbeat cycle."""

    flows_due: int = Field(..., description="Flows claimed as due in this cycle")
    flows_triggered: int = Field(..., description="Flows that ran to completion without failing")
    timestamp: str = Field(..., description="Cycle time (ISO 8601)")


class HeartbeatErrorResponse(BaseModel):
    """Fatal cycle error."""

    error: str
