"""
Kitee API - Pydantic Response Schemas
=======================================

What:  Response models shared by the root, health and route-group endpoints.
Why:   FastAPI validates and documents responses from these models.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class MessageResponse(BaseModel):
    """Body of ``GET /``."""

    success: bool
    message: str


class HealthResponse(BaseModel):
    """
    Health check response.

    The database is reported but never makes the check fail: the HTTP
    server is up independently of it.
    """

    status: str = Field(description="Overall service status: ok")
    version: str = Field(description="Application version")
    database: str = Field(description="Database state: connected, connecting, disconnected")
    uptime_seconds: float = Field(description="Seconds since service started")


class CollectionResponse(BaseModel):
    """Documents listed by a route group."""

    success: bool
    data: List[Dict[str, Any]]


class ErrorResponse(BaseModel):
    """
    Standard error body.

    ``details`` carries non-sensitive context (limits, offending charset);
    it is omitted for errors whose context is server-side only.
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable explanation")
    details: Optional[Dict[str, Any]] = Field(default=None)
    request_id: str = Field(default="", description="Request ID for support correlation")
