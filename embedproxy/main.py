from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from embedproxy.api.router import router
from embedproxy.core.cache import CacheManager
from embedproxy.core.config import Settings, settings
from embedproxy.models.common import HealthResponse
from embedproxy.services.proxy.service import ProxyService
from embedproxy.workers.fetcher import ContentFetcher


LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"


def _configure_logging(config: Settings) -> None:
    """Send ``embedproxy.*`` records to stderr at ``config.log_level``.

    Rewrites run on thread-pool workers, so the thread name is part of the
    format.  The namespace owns its handler and does not propagate: fetch
    failures and rewrite fallbacks are printed exactly once whether or not
    uvicorn configured the root logger first.  Every app built by
    :func:`create_app` updates the level; the handler is attached once.
    """
    app_log = logging.getLogger("embedproxy")
    app_log.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    app_log.propagate = False
    if app_log.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    app_log.addHandler(handler)


def create_app(config: Optional[Settings] = None) -> FastAPI:
    """Build the application around *config* (the module settings by default)."""
    config = config or settings
    _configure_logging(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # ── Startup ──────────────────────────────────────────────────────
        caches = CacheManager.from_settings(config)
        fetcher = ContentFetcher(config)
        app.state.caches = caches
        app.state.fetcher = fetcher
        app.state.proxy_service = ProxyService.from_settings(config, caches, fetcher)
        caches.start_sweeper()
        if config.allow_loopback:
            logging.getLogger(__name__).warning(
                "allow_loopback is enabled: loopback targets will be proxied"
            )
        yield
        # ── Shutdown ─────────────────────────────────────────────────────
        await fetcher.aclose()
        await caches.close()

    app = FastAPI(
        title="Embed Proxy",
        description="Fetches a page server-side and rewrites it for embedding.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(router)

    @app.get("/health", tags=["health"], response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    return app


app = create_app()
