from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response

from embedproxy.models.common import ErrorResponse
from embedproxy.models.proxy.document import CacheStatus, ErrorReport
from embedproxy.services.proxy.classifier import input_error_report
from embedproxy.services.proxy.service import EmbedError, ProxyService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------


def _get_service(request: Request) -> ProxyService:
    """FastAPI dependency returning the ``ProxyService`` built at startup."""
    return request.app.state.proxy_service


def error_response(report: ErrorReport) -> JSONResponse:
    body = ErrorResponse(
        error=report.message,
        code=report.internal_code,
        suggestions=report.suggestions,
        url=report.target_url,
        timestamp=datetime.now(timezone.utc),
        details=report.details,
    )
    return JSONResponse(
        status_code=report.http_status,
        content=body.model_dump(mode="json", exclude_none=True),
    )


# ---------------------------------------------------------------------------
# GET /proxy
# ---------------------------------------------------------------------------


@router.get(
    "/proxy",
    response_class=HTMLResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        415: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
    summary="Fetch, rewrite and return a page for embedding",
)
async def get_proxy(
    url: Optional[str] = None,
    service: ProxyService = Depends(_get_service),
) -> Response:
    """Return the target page rewritten for display inside the caller's site.

    - **200**: rewritten HTML; ``X-Cache`` is ``HIT``, ``MISS`` or ``FALLBACK``
    - **400**: ``url`` missing or not an absolute URL
    - **403**: scheme other than http/https, or an internal-network host
    - **4xx/5xx**: upstream or network failure, see the JSON ``code``
    """
    if not url:
        return error_response(
            input_error_report("MISSING_URL", "URL parameter is required", None)
        )

    started = time.perf_counter()
    try:
        result = await service.embed(service.build_request(url))
    except EmbedError as exc:
        logger.warning(
            "GET /proxy %s -> %d %s", url, exc.report.http_status, exc.report.internal_code
        )
        return error_response(exc.report)
    except Exception as exc:
        logger.exception("GET /proxy unexpected error for %s: %s", url, exc)
        return error_response(service.classify(exc, url))

    elapsed_ms = (time.perf_counter() - started) * 1000
    headers = {
        "X-Cache": result.cache_status.value,
        "X-Response-Time": f"{elapsed_ms:.0f}ms",
        "X-Frame-Options": "SAMEORIGIN",
        "X-Content-Type-Options": "nosniff",
    }
    if result.cache_status is CacheStatus.FALLBACK and result.content_source:
        headers["X-Content-Source"] = result.content_source
    return HTMLResponse(content=result.html, headers=headers)
