from __future__ import annotations

from pydantic import BaseModel


class CacheStatsEntry(BaseModel):
    name: str
    size: int
    hits: int
    misses: int
    hit_rate: float
    ttl_seconds: float


class CacheStatsResponse(BaseModel):
    """API response shape for ``GET /cache/stats``."""

    pages: CacheStatsEntry
    proxy: CacheStatsEntry


class CacheClearedResponse(BaseModel):
    removed: int
