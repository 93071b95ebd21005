"""Models module for Pydantic schemas.

This module exposes all response models used by the API.
"""

from models.schemas import (
    DebugResponse,
    DebugSession,
    ErrorDetail,
    HealthResponse,
    SessionStatus,
    StatusResponse,
)

__all__ = [
    "DebugResponse",
    "DebugSession",
    "ErrorDetail",
    "HealthResponse",
    "SessionStatus",
    "StatusResponse",
]
