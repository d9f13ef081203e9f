from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from embedproxy.core.security import ValidationMode


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"
    FALLBACK = "FALLBACK"


class EmbedRequest(BaseModel):
    """One inbound embed call.  Never persisted.

    ``mode`` comes from server configuration, never from the caller.
    """

    target_url: str
    mode: ValidationMode = ValidationMode.RESTRICTED

    @property
    def allow_loopback(self) -> bool:
        return self.mode is ValidationMode.PERMISSIVE


class EmbedResult(BaseModel):
    html: str
    cache_status: CacheStatus
    target_url: str
    content_source: Optional[str] = None


class ErrorReport(BaseModel):
    """Stable, caller-visible description of a failed embed."""

    internal_code: str
    http_status: int
    message: str
    suggestions: list[str] = Field(min_length=1, max_length=4)
    target_url: Optional[str] = None
    details: Optional[str] = None


class FallbackContent(BaseModel):
    """Labeled placeholder served instead of a DNS error for demo hosts."""

    html: str
    target_url: str
    cache_status: CacheStatus = CacheStatus.FALLBACK
    content_source: str = "demo-fallback"
