"""Integration tests.

These tests exercise the full request → service → fetcher → rewriter pipeline.

What is mocked:
  - External HTTP calls mocked per-test with respx

What is NOT mocked (runs real code):
  - FastAPI routes, dependency injection, startup/shutdown hooks
  - URL validation, caching, error classification and the demo fallback
  - HTML rewriting with BeautifulSoup
"""

from __future__ import annotations

import httpx
import pytest
import respx
from bs4 import BeautifulSoup

from embedproxy.services.proxy.rewriter import BANNER_CLASS

_TARGET = "https://good.example/page"
_PAGE = (
    "<!DOCTYPE html><html><head><title>Good</title>"
    '<script src="https://www.google-analytics.com/analytics.js"></script>'
    '<script src="/app.js"></script>'
    "</head><body>"
    '<a id="x" href="/x">x</a>'
    "</body></html>"
)


def _page_response(html: str = _PAGE) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/html; charset=utf-8"}, text=html)


# ── Rewriting and caching ──────────────────────────────────────────────────────

class TestIntegrationEmbed:
    @respx.mock
    def test_first_request_is_rewritten_miss(self, client):
        route = respx.get(_TARGET).mock(return_value=_page_response())

        resp = client.get("/proxy", params={"url": _TARGET})

        assert resp.status_code == 200
        assert resp.headers["x-cache"] == "MISS"
        soup = BeautifulSoup(resp.text, "html.parser")
        srcs = [s.get("src") for s in soup.find_all("script")]
        assert not any("google-analytics" in (src or "") for src in srcs)
        assert "https://good.example/app.js" in srcs
        assert soup.find(id="x")["href"] == "https://good.example/x"
        assert soup.head.find(True).name == "base"
        assert soup.head.find(True)["href"] == "https://good.example/"
        assert soup.body.find(True)["class"] == [BANNER_CLASS]
        assert route.call_count == 1

    @respx.mock
    def test_second_request_is_served_from_cache(self, client):
        """MISS → HIT with a single upstream fetch, the canonical user flow."""
        route = respx.get(_TARGET).mock(return_value=_page_response())

        first = client.get("/proxy", params={"url": _TARGET})
        second = client.get("/proxy", params={"url": _TARGET})

        assert first.headers["x-cache"] == "MISS"
        assert second.headers["x-cache"] == "HIT"
        assert second.text == first.text
        assert route.call_count == 1

        stats = client.get("/cache/stats").json()
        assert stats["proxy"]["size"] == 1
        assert stats["pages"]["size"] == 1
        assert stats["proxy"]["hits"] == 1

    @respx.mock
    def test_cleared_cache_fetches_again(self, client):
        route = respx.get(_TARGET).mock(return_value=_page_response())

        client.get("/proxy", params={"url": _TARGET})
        client.delete("/cache")
        resp = client.get("/proxy", params={"url": _TARGET})

        assert resp.headers["x-cache"] == "MISS"
        assert route.call_count == 2

    @respx.mock
    def test_cache_key_is_the_exact_url(self, client):
        respx.get(_TARGET).mock(return_value=_page_response())
        respx.get(_TARGET + "/").mock(return_value=_page_response())

        client.get("/proxy", params={"url": _TARGET})
        resp = client.get("/proxy", params={"url": _TARGET + "/"})

        assert resp.headers["x-cache"] == "MISS"

    @respx.mock
    def test_redirect_to_internal_host_is_blocked(self, client):
        respx.get(_TARGET).mock(
            return_value=httpx.Response(302, headers={"location": "http://169.254.169.254/"})
        )
        metadata = respx.get("http://169.254.169.254/").mock(return_value=httpx.Response(200))

        resp = client.get("/proxy", params={"url": _TARGET})

        assert resp.status_code == 403
        assert resp.json()["code"] == "DISALLOWED_HOST"
        assert not metadata.called


# ── Failures ───────────────────────────────────────────────────────────────────

class TestIntegrationFailures:
    @respx.mock
    def test_dns_failure_on_demo_host_serves_fallback(self, client):
        respx.get("https://example.com/").mock(
            side_effect=httpx.ConnectError("[Errno -2] Name or service not known")
        )

        resp = client.get("/proxy", params={"url": "https://example.com/"})

        assert resp.status_code == 200
        assert resp.headers["x-cache"] == "FALLBACK"
        assert resp.headers["x-content-source"] == "demo-fallback"
        assert "DEMO MODE" in resp.text
        stats = client.get("/cache/stats").json()
        assert stats["pages"]["size"] == 0
        assert stats["proxy"]["size"] == 0

    @respx.mock
    def test_dns_failure_elsewhere_returns_404(self, client):
        respx.get("https://nowhere.example/").mock(
            side_effect=httpx.ConnectError("[Errno -2] Name or service not known")
        )

        resp = client.get("/proxy", params={"url": "https://nowhere.example/"})

        assert resp.status_code == 404
        body = resp.json()
        assert body["code"] == "DNS_ERROR"
        assert body["url"] == "https://nowhere.example/"
        assert 1 <= len(body["suggestions"]) <= 4

    @pytest.mark.parametrize(
        "mock_kwargs, status, code",
        [
            ({"side_effect": httpx.ReadTimeout("timed out")}, 504, "TIMEOUT"),
            ({"side_effect": httpx.ConnectError("[Errno 111] Connection refused")}, 502, "CONNECTION_REFUSED"),
            ({"return_value": httpx.Response(404, text="gone")}, 404, "HTTP_404"),
            ({"return_value": httpx.Response(403, text="no")}, 403, "HTTP_403"),
            ({"return_value": httpx.Response(503, text="down")}, 503, "HTTP_503"),
        ],
    )
    @respx.mock
    def test_upstream_failures_classified(self, client, mock_kwargs, status, code):
        respx.get(_TARGET).mock(**mock_kwargs)

        resp = client.get("/proxy", params={"url": _TARGET})

        assert resp.status_code == status
        assert resp.json()["code"] == code

    @respx.mock
    def test_oversize_body_returns_413(self, client_factory):
        client = client_factory(max_body_bytes=64)
        respx.get(_TARGET).mock(return_value=_page_response(_PAGE * 4))

        resp = client.get("/proxy", params={"url": _TARGET})

        assert resp.status_code == 413
        assert resp.json()["code"] == "CONTENT_TOO_LARGE"

    @respx.mock
    def test_failures_are_not_cached(self, client):
        route = respx.get(_TARGET)
        route.side_effect = [httpx.Response(503, text="down"), _page_response()]

        assert client.get("/proxy", params={"url": _TARGET}).status_code == 503
        resp = client.get("/proxy", params={"url": _TARGET})

        assert resp.status_code == 200
        assert resp.headers["x-cache"] == "MISS"
        assert route.call_count == 2

    @respx.mock
    def test_non_html_target_returns_415(self, client):
        respx.get("https://good.example/report.pdf").mock(
            return_value=httpx.Response(200, content=b"%PDF-1.7", headers={"content-type": "application/pdf"})
        )

        resp = client.get("/proxy", params={"url": "https://good.example/report.pdf"})

        assert resp.status_code == 415
        assert resp.json()["code"] == "UNSUPPORTED_CONTENT_TYPE"
        assert client.get("/cache/stats").json()["pages"]["size"] == 0

    @pytest.mark.parametrize(
        "url, status, code",
        [
            ("http://exa mple.com/", 400, "INVALID_URL"),
            ("http://127.1/", 403, "DISALLOWED_HOST"),
            ("http://0x7f000001/", 403, "DISALLOWED_HOST"),
            ("http://10.1/", 403, "DISALLOWED_HOST"),
            ("http://[::]/", 403, "DISALLOWED_HOST"),
        ],
    )
    @respx.mock
    def test_rejected_targets_never_reach_the_network(self, client, url, status, code):
        resp = client.get("/proxy", params={"url": url})

        assert resp.status_code == status
        assert resp.json()["code"] == code
        assert respx.calls.call_count == 0
