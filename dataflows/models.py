# dataflows/models.py
from __future__ import annotations

import logging
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FlowInput(BaseModel):
    """Base class for structured flow configuration."""

    model_config = ConfigDict(extra="allow")

    class_name: str = Field(..., description="Registered work unit name")


class LogMessageInput(FlowInput):
    """Input for the log_message flow."""

    class_name: Literal["log_message"] = "log_message"
    message: str = Field(..., min_length=1, description="Message to log on every run")
    level: str = Field("INFO", description="Logging level name")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate level is a known logging level name."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"level must be a logging level name, got: {v}")
        return level


class HttpPingInput(FlowInput):
    """Input for the http_ping flow."""

    class_name: Literal["http_ping"] = "http_ping"
    url: str = Field(..., description="URL to request")
    method: Literal["GET", "HEAD", "POST"] = Field("GET", description="HTTP method")
    timeout: float = Field(10.0, gt=0.0, description="Request timeout (seconds)")
    headers: Optional[Dict[str, str]] = Field(None, description="Extra request headers")


class FlowRunResult(BaseModel):
    """Standard flow execution result."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool = Field(..., description="Whether the flow ran to completion")
    error_message: Optional[str] = Field(None, description="Error message if execution failed")
    error_backtrace: Optional[str] = Field(None, description="Formatted traceback if execution failed")
    duration_ms: Optional[int] = Field(None, description="Execution duration in milliseconds")
    error: Optional[BaseException] = Field(None, exclude=True, description="Original error, kept for re-raising")

    @property
    def failed(self) -> bool:
        return not self.success

    def raise_for_failure(self) -> None:
        """Re-raise the original error of a failed run. No-op on success."""
        if self.success:
            return
        if self.error is not None:
            raise self.error
        raise RuntimeError(self.error_message or "Flow execution failed")
