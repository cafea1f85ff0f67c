"""
Pydantic schemas for the API contract.

Defines the health payload and the uniform error envelope.
No business logic belongs here.
"""

from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str


class ErrorResponse(BaseModel):
    """Envelope for every failed response.

    Attributes:
        success: Always False.
        error: Client-safe error message.
        stack: Raw failure detail, only outside production.
    """

    success: bool = False
    error: str
    stack: Optional[str] = None
