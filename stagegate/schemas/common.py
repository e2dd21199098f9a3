"""
Common schema types used across the API.
"""

from typing import Any, List, Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: Any
    code: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str
    stages: int = 0
    epoch: int = 0
    load_errors: List[str] = []
