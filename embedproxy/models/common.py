from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str


class ErrorResponse(BaseModel):
    """JSON body returned for every failed proxy request."""

    error: str
    code: str
    suggestions: list[str]
    url: Optional[str] = None
    timestamp: datetime
    details: Optional[str] = None
