"""Pydantic schemas for API responses.

This module defines the data models returned by the HTTP API.
All models use Pydantic v2 with strict type validation.
"""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(StrEnum):
    """Session status as reported to clients."""

    RUNNING = "running"
    NOT_FOUND = "not_found"


class StatusResponse(BaseModel):
    """Response for the session status route."""

    model_config = ConfigDict(populate_by_name=True)

    status: SessionStatus = Field(
        description="Whether the session is running",
    )
    remaining_time_seconds: int = Field(
        default=0,
        alias="remainingTimeSeconds",
        ge=0,
        description="Whole seconds until the session expires",
        examples=[3590],
    )
    endpoints: dict[str, str] = Field(
        default_factory=dict,
        description="Endpoint name to public proxy path",
        examples=[{"primary": "/proxy/sess_abc/primary/"}],
    )


class ErrorDetail(BaseModel):
    """Body of an error response."""

    error: str = Field(
        description="Stable error code",
        examples=["session_not_found", "backend_unreachable"],
    )
    message: str = Field(
        description="Human-readable explanation",
    )


class DebugSession(BaseModel):
    """One live session as shown on the debug route."""

    id: str = Field(
        description="Redacted session identifier (first 8 characters of the token)",
        examples=["3f9a1c2e"],
    )
    state: str = Field(
        description="Lifecycle state",
        examples=["active", "provisioning"],
    )
    created_at: str = Field(
        description="ISO-8601 creation timestamp (UTC)",
    )
    remaining_time_seconds: int = Field(
        description="Whole seconds until the session expires",
    )
    endpoints: list[str] | dict[str, str] = Field(
        description="Endpoint names, or name to address when addresses are exposed",
    )


class DebugResponse(BaseModel):
    """Ops-only view of the gateway state."""

    environment: dict[str, object] = Field(
        description="Deployment facts useful when debugging",
    )
    active_sessions: int = Field(
        description="Number of live sessions",
    )
    sessions: list[DebugSession] = Field(
        default_factory=list,
        description="Live sessions",
    )
    metrics: dict[str, object] = Field(
        default_factory=dict,
        description="Lifecycle and proxy counters",
    )


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    docker_available: bool = Field(
        default=False,
        description="Whether the Docker daemon is reachable",
    )
    active_sessions: int = Field(
        default=0,
        description="Number of live sessions",
    )
