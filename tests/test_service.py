from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from embedproxy.core.cache import CacheManager
from embedproxy.core.security import DisallowedHostError
from embedproxy.models.proxy.document import CacheStatus
from embedproxy.services.proxy.rewriter import BANNER_CLASS
from embedproxy.services.proxy.service import EmbedError, ProxyService
from embedproxy.workers.fetcher import ContentFetcher, FetchError, FetchResult, NetworkErrorKind

_URL = "https://good.example/page"
_BODY = (
    "<html><head><script src='https://www.google-analytics.com/analytics.js'></script></head>"
    "<body><a id='x' href='/x'>x</a></body></html>"
)


def _result(url: str = _URL, body: str = _BODY) -> FetchResult:
    return FetchResult(url=url, body=body, content_type="text/html", status_code=200)


def _build(settings, fetcher, clock) -> ProxyService:
    caches = CacheManager.from_settings(settings, clock=clock)
    return ProxyService.from_settings(settings, caches, fetcher)


@pytest.fixture
def fetcher():
    mock = AsyncMock(spec=ContentFetcher)
    mock.fetch.return_value = _result()
    return mock


@pytest.fixture
def service(settings, fetcher, clock) -> ProxyService:
    return _build(settings, fetcher, clock)


# ---------------------------------------------------------------------------
# Cache behaviour
# ---------------------------------------------------------------------------


class TestEmbed:
    async def test_miss_then_hit(self, service, fetcher):
        first = await service.embed(service.build_request(_URL))
        second = await service.embed(service.build_request(_URL))

        assert first.cache_status is CacheStatus.MISS
        assert second.cache_status is CacheStatus.HIT
        assert second.html == first.html
        fetcher.fetch.assert_awaited_once_with(_URL)

    async def test_result_is_rewritten(self, service):
        result = await service.embed(service.build_request(_URL))
        assert "google-analytics" not in result.html
        assert 'href="https://good.example/x"' in result.html
        assert BANNER_CLASS in result.html
        assert '<base href="https://good.example/"' in result.html

    async def test_expired_rewrite_rebuilt_from_stored_page(self, service, fetcher, clock):
        await service.embed(service.build_request(_URL))
        assert service._caches.pages.get(_URL) == _BODY

        clock.advance(service._caches.proxy.ttl + 1)
        result = await service.embed(service.build_request(_URL))
        assert result.cache_status is CacheStatus.MISS
        assert fetcher.fetch.await_count == 1

    async def test_page_refetched_once_both_entries_expire(self, service, fetcher, clock):
        await service.embed(service.build_request(_URL))
        clock.advance(service._caches.pages.ttl + 1)
        result = await service.embed(service.build_request(_URL))
        assert result.cache_status is CacheStatus.MISS
        assert fetcher.fetch.await_count == 2

    async def test_surrounding_whitespace_stripped_before_fetch_and_store(self, service, fetcher):
        result = await service.embed(service.build_request(f"  {_URL}\n"))
        assert result.target_url == _URL
        fetcher.fetch.assert_awaited_once_with(_URL)
        assert service._caches.proxy.get(_URL) is not None

    async def test_different_urls_are_cached_separately(self, service, fetcher):
        await service.embed(service.build_request(_URL))
        await service.embed(service.build_request(_URL + "?v=2"))
        assert fetcher.fetch.await_count == 2


class TestEmbedFailures:
    @pytest.mark.parametrize(
        "url, code",
        [
            ("not a url", "INVALID_URL"),
            ("ftp://files.example/", "DISALLOWED_SCHEME"),
            ("http://192.168.1.1/", "DISALLOWED_HOST"),
            ("http://localhost:8080/", "DISALLOWED_HOST"),
        ],
    )
    async def test_rejected_input_never_fetches(self, service, fetcher, url, code):
        with pytest.raises(EmbedError) as info:
            await service.embed(service.build_request(url))
        assert info.value.report.internal_code == code
        fetcher.fetch.assert_not_awaited()

    async def test_loopback_allowed_when_configured(self, make_settings, fetcher, clock):
        service = _build(make_settings(allow_loopback=True), fetcher, clock)
        result = await service.embed(service.build_request("http://localhost:8080/"))
        assert result.cache_status is CacheStatus.MISS

    async def test_failures_are_not_cached(self, service, fetcher):
        fetcher.fetch.side_effect = FetchError(NetworkErrorKind.TIMEOUT, "slow", _URL)
        with pytest.raises(EmbedError) as info:
            await service.embed(service.build_request(_URL))
        assert info.value.report.http_status == 504
        assert len(service._caches.proxy) == 0
        assert len(service._caches.pages) == 0

        fetcher.fetch.side_effect = None
        result = await service.embed(service.build_request(_URL))
        assert result.cache_status is CacheStatus.MISS

    async def test_blocked_redirect_reported_as_disallowed_host(self, service, fetcher):
        fetcher.fetch.side_effect = DisallowedHostError("http://10.0.0.1/", "internal")
        with pytest.raises(EmbedError) as info:
            await service.embed(service.build_request(_URL))
        assert info.value.report.http_status == 403

    async def test_details_only_outside_production(self, make_settings, fetcher, clock):
        fetcher.fetch.side_effect = FetchError(NetworkErrorKind.CONNECTION_REFUSED, "refused", _URL)

        prod = _build(make_settings(), fetcher, clock)
        with pytest.raises(EmbedError) as info:
            await prod.embed(prod.build_request(_URL))
        assert info.value.report.details is None

        dev = _build(make_settings(environment="development"), fetcher, clock)
        with pytest.raises(EmbedError) as info:
            await dev.embed(dev.build_request(_URL))
        assert info.value.report.details == "refused"


class TestFallback:
    async def test_dns_failure_on_demo_host_serves_fallback(self, service, fetcher):
        url = "https://example.com/"
        fetcher.fetch.side_effect = FetchError(NetworkErrorKind.DNS_ERROR, "no dns", url)

        first = await service.embed(service.build_request(url))
        second = await service.embed(service.build_request(url))

        for result in (first, second):
            assert result.cache_status is CacheStatus.FALLBACK
            assert result.content_source == "demo-fallback"
            assert "DEMO MODE" in result.html
        assert fetcher.fetch.await_count == 2
        assert len(service._caches.pages) == 0
        assert len(service._caches.proxy) == 0

    async def test_dns_failure_on_other_host_is_an_error(self, service, fetcher):
        url = "https://unknown.example/"
        fetcher.fetch.side_effect = FetchError(NetworkErrorKind.DNS_ERROR, "no dns", url)
        with pytest.raises(EmbedError) as info:
            await service.embed(service.build_request(url))
        assert info.value.report.http_status == 404
        assert len(service._caches.pages) == 0


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentMisses:
    @staticmethod
    def _slow_fetcher():
        fetcher = AsyncMock(spec=ContentFetcher)

        async def _fetch(url):
            await asyncio.sleep(0.05)
            return _result(url)

        fetcher.fetch.side_effect = _fetch
        return fetcher

    async def test_without_coalescing_each_miss_fetches(self, make_settings, clock):
        fetcher = self._slow_fetcher()
        service = _build(make_settings(coalesce_inflight=False), fetcher, clock)
        results = await asyncio.gather(
            *(service.embed(service.build_request(_URL)) for _ in range(3))
        )
        assert fetcher.fetch.await_count == 3
        assert {r.cache_status for r in results} == {CacheStatus.MISS}

    async def test_coalescing_shares_one_fetch(self, make_settings, clock):
        fetcher = self._slow_fetcher()
        service = _build(make_settings(coalesce_inflight=True), fetcher, clock)
        results = await asyncio.gather(
            *(service.embed(service.build_request(_URL)) for _ in range(5))
        )
        assert fetcher.fetch.await_count == 1
        assert len({r.html for r in results}) == 1
        assert service._inflight == {}

    async def test_coalesced_failure_reaches_every_waiter(self, make_settings, clock):
        fetcher = AsyncMock(spec=ContentFetcher)

        async def _fail(url):
            await asyncio.sleep(0.02)
            raise FetchError(NetworkErrorKind.CONNECTION_RESET, "reset", url)

        fetcher.fetch.side_effect = _fail
        service = _build(make_settings(coalesce_inflight=True), fetcher, clock)
        outcomes = await asyncio.gather(
            *(service.embed(service.build_request(_URL)) for _ in range(3)),
            return_exceptions=True,
        )
        assert all(isinstance(o, EmbedError) for o in outcomes)
        assert fetcher.fetch.await_count == 1
        assert service._inflight == {}
