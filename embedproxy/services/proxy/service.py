from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

from starlette.concurrency import run_in_threadpool

from embedproxy.core.cache import CacheManager
from embedproxy.core.config import Settings
from embedproxy.core.security import UrlValidationError, ValidationMode, validate_target_url
from embedproxy.models.proxy.document import (
    CacheStatus,
    EmbedRequest,
    EmbedResult,
    ErrorReport,
    FallbackContent,
)
from embedproxy.services.proxy.classifier import classify_error
from embedproxy.services.proxy.fallback import render_fallback
from embedproxy.services.proxy.rewriter import HtmlRewriter
from embedproxy.workers.fetcher import ContentFetcher, FetchError

logger = logging.getLogger(__name__)


class EmbedError(Exception):
    """Raised when a target cannot be embedded; carries the caller-visible report."""

    def __init__(self, report: ErrorReport) -> None:
        super().__init__(report.message)
        self.report = report


class ProxyService:
    """validate -> cache lookup -> fetch -> rewrite -> cache store.

    ``proxy`` holds rewritten pages.  ``pages`` holds the raw upstream
    document of each successful fetch, so an expired rewrite is rebuilt
    without another request while the page itself is still fresh.  Failed
    fetches and demo fallbacks are never cached.
    """

    def __init__(
        self,
        caches: CacheManager,
        fetcher: ContentFetcher,
        rewriter: HtmlRewriter,
        settings: Settings,
    ) -> None:
        self._caches = caches
        self._fetcher = fetcher
        self._rewriter = rewriter
        self._settings = settings
        self._inflight: dict[str, asyncio.Future[str]] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, caches: CacheManager, fetcher: ContentFetcher
    ) -> ProxyService:
        rewriter = HtmlRewriter(
            proxy_name=settings.proxy_name,
            large_document_bytes=settings.large_document_bytes,
        )
        return cls(caches, fetcher, rewriter, settings)

    def build_request(self, target_url: str) -> EmbedRequest:
        mode = (
            ValidationMode.PERMISSIVE
            if self._settings.allow_loopback
            else ValidationMode.RESTRICTED
        )
        return EmbedRequest(target_url=target_url.strip(), mode=mode)

    def classify(self, exc: BaseException, target_url: str) -> Union[ErrorReport, FallbackContent]:
        return classify_error(
            exc,
            target_url,
            include_details=not self._settings.is_production,
            environment_note=not self._settings.is_production,
            fallback=self._fallback_page,
        )

    async def embed(self, request: EmbedRequest) -> EmbedResult:
        """Return the rewritten page for ``request.target_url``.

        Raises:
            EmbedError: validation or fetch failure, already classified.
        """
        url = request.target_url.strip()
        try:
            validate_target_url(url, allow_loopback=request.allow_loopback)
        except UrlValidationError as exc:
            logger.info("Rejected target %r: %s", url, exc.reason)
            raise EmbedError(self.classify(exc, url)) from exc

        cached = self._caches.proxy.get(url)
        if cached is not None:
            return EmbedResult(html=cached, cache_status=CacheStatus.HIT, target_url=url)

        try:
            if self._settings.coalesce_inflight:
                html = await self._shared_fetch_and_rewrite(url)
            else:
                html = await self._fetch_and_rewrite(url)
        except (FetchError, UrlValidationError) as exc:
            logger.warning("Fetch failed for %s: %s", url, exc)
            outcome = self.classify(exc, url)
            if isinstance(outcome, FallbackContent):
                logger.info("Serving demo fallback for %s", url)
                return EmbedResult(
                    html=outcome.html,
                    cache_status=outcome.cache_status,
                    target_url=url,
                    content_source=outcome.content_source,
                )
            raise EmbedError(outcome) from exc

        return EmbedResult(html=html, cache_status=CacheStatus.MISS, target_url=url)

    async def _fetch_and_rewrite(self, url: str) -> str:
        # A fresh upstream document only needs rewriting again
        body = self._caches.pages.get(url)
        if body is None:
            result = await self._fetcher.fetch(url)
            body = result.body
            self._caches.pages.set(url, body)
        # Parsing is CPU-bound; keep it off the event loop
        html = await run_in_threadpool(self._rewriter.rewrite, body, url)
        self._caches.proxy.set(url, html)
        return html

    async def _shared_fetch_and_rewrite(self, url: str) -> str:
        """Single-flight variant: identical concurrent misses share one fetch."""
        task = self._inflight.get(url)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_rewrite(url))
            self._inflight[url] = task
            task.add_done_callback(lambda t, key=url: self._release(key, t))
        else:
            logger.debug("Joining in-flight fetch for %s", url)
        # One waiter's cancellation must not cancel the shared fetch
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Future[str]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            task.exception()  # mark retrieved when every waiter went away

    def _fallback_page(self, target_url: str) -> Optional[str]:
        return render_fallback(target_url, self._settings.proxy_name)
