from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from embedproxy.core.cache import CacheManager
from embedproxy.models.proxy.schemas import CacheClearedResponse, CacheStatsResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cache", tags=["cache"])


def _get_caches(request: Request) -> CacheManager:
    return request.app.state.caches


@router.get("/stats", response_model=CacheStatsResponse, summary="Cache statistics")
async def get_cache_stats(caches: CacheManager = Depends(_get_caches)) -> CacheStatsResponse:
    return CacheStatsResponse(**caches.stats())


@router.delete("", response_model=CacheClearedResponse, summary="Drop every cached page")
async def clear_caches(caches: CacheManager = Depends(_get_caches)) -> CacheClearedResponse:
    removed = caches.clear()
    logger.info("DELETE /cache removed %d entries", removed)
    return CacheClearedResponse(removed=removed)
