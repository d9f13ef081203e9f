"""Async HTTP content fetcher.

Responsible solely for retrieving a target page's body.

Uses httpx.AsyncClient which is meant to be long-lived and reused.  One
client is owned by each :class:`ContentFetcher`; it is created lazily and
closed via :meth:`ContentFetcher.aclose` at shutdown.

Every request, including each redirect hop, is re-validated against the
SSRF guard by a request event hook.  Only HTML documents are read; other
media types are refused before the body is downloaded.  There is no retry:
a failure is raised immediately as :class:`FetchError` with a
:class:`NetworkErrorKind`.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

import httpx

from embedproxy.core.config import Settings
from embedproxy.core.security import InvalidUrlError, validate_target_url

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "image/avif,image/webp,*/*;q=0.8"
    ),
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
}

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "name resolution",
)
_REFUSED_MARKERS = ("connection refused", "actively refused")
_RESET_MARKERS = ("connection reset", "reset by peer")

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


class NetworkErrorKind(str, Enum):
    DNS_ERROR = "DNS_ERROR"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    CONNECTION_RESET = "CONNECTION_RESET"
    TIMEOUT = "TIMEOUT"
    CONTENT_TOO_LARGE = "CONTENT_TOO_LARGE"
    UNSUPPORTED_CONTENT = "UNSUPPORTED_CONTENT"
    HTTP_STATUS = "HTTP_STATUS"
    UNKNOWN = "UNKNOWN"


class FetchError(Exception):
    """Raised when the fetcher cannot retrieve a usable page."""

    def __init__(
        self,
        kind: NetworkErrorKind,
        message: str,
        url: str,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.status_code = status_code


@dataclass(frozen=True)
class FetchResult:
    url: str
    body: str
    content_type: str
    status_code: int


@dataclass
class _HostSlot:
    semaphore: asyncio.Semaphore
    users: int = 0


def is_html_content_type(content_type: str) -> bool:
    """True for HTML media types; a missing header is treated as HTML."""
    media_type = content_type.split(";", 1)[0].strip().lower()
    return not media_type or media_type in HTML_CONTENT_TYPES


def _exception_chain(exc: BaseException):
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _chain_matches(exc: BaseException, types: tuple, markers: tuple[str, ...], errnos=()) -> bool:
    for err in _exception_chain(exc):
        if isinstance(err, types):
            return True
        if isinstance(err, OSError) and err.errno in errnos:
            return True
        text = str(err).lower()
        if any(marker in text for marker in markers):
            return True
    return False


def classify_transport_error(exc: httpx.HTTPError, url: str) -> FetchError:
    """Map an httpx transport failure to a :class:`FetchError`."""
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, httpx.TimeoutException):
        kind = NetworkErrorKind.TIMEOUT
    elif isinstance(exc, httpx.ConnectError):
        if _chain_matches(exc, (socket.gaierror,), _DNS_MARKERS):
            kind = NetworkErrorKind.DNS_ERROR
        elif _chain_matches(
            exc, (ConnectionRefusedError,), _REFUSED_MARKERS, (errno.ECONNREFUSED,)
        ):
            kind = NetworkErrorKind.CONNECTION_REFUSED
        else:
            kind = NetworkErrorKind.UNKNOWN
    elif isinstance(exc, httpx.RemoteProtocolError) or (
        isinstance(exc, (httpx.ReadError, httpx.WriteError))
        and _chain_matches(
            exc, (ConnectionResetError,), _RESET_MARKERS, (errno.ECONNRESET,)
        )
    ):
        kind = NetworkErrorKind.CONNECTION_RESET
    else:
        kind = NetworkErrorKind.UNKNOWN
    return FetchError(kind, message, url)


class ContentFetcher:
    """Performs bounded outbound GETs over a shared keep-alive client."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._client: Optional[httpx.AsyncClient] = None
        self._host_slots: dict[str, _HostSlot] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        """Return the shared AsyncClient.  Creates one if missing."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.timeout_seconds),
                limits=httpx.Limits(
                    max_connections=self._settings.max_connections,
                    max_keepalive_connections=self._settings.max_keepalive_connections,
                ),
                follow_redirects=True,
                max_redirects=self._settings.max_redirects,
                verify=self._settings.verify_ssl,
                headers=BROWSER_HEADERS,
                event_hooks={"request": [self._guard_request]},
            )
        return self._client

    async def aclose(self) -> None:
        """Close the shared AsyncClient gracefully."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            logger.info("HTTP client closed.")
        self._client = None

    async def _guard_request(self, request: httpx.Request) -> None:
        # Runs for the initial request and for every redirect hop
        validate_target_url(str(request.url), allow_loopback=self._settings.allow_loopback)

    @asynccontextmanager
    async def _host_slot(self, host: str) -> AsyncIterator[None]:
        """Bound concurrent fetches per host; idle hosts hold no semaphore."""
        slot = self._host_slots.get(host)
        if slot is None:
            slot = _HostSlot(asyncio.Semaphore(self._settings.max_connections_per_host))
            self._host_slots[host] = slot
        slot.users += 1
        try:
            async with slot.semaphore:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0 and self._host_slots.get(host) is slot:
                del self._host_slots[host]

    async def fetch(self, url: str) -> FetchResult:
        """GET *url* and return its decoded body.

        Raises:
            FetchError: on any network failure, non-2xx status, non-HTML
                content, oversize body or when the total deadline elapses.
            UrlValidationError: when the URL cannot be requested or a
                redirect points at a disallowed host.
        """
        try:
            host = (httpx.URL(url).host or "").lower()
            return await asyncio.wait_for(
                self._fetch_with_slot(host, url),
                timeout=self._settings.timeout_seconds,
            )
        except httpx.InvalidURL as exc:
            raise InvalidUrlError(url, f"Invalid URL '{url}': {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise FetchError(
                NetworkErrorKind.TIMEOUT,
                f"Request to {url} exceeded {self._settings.timeout_ms}ms",
                url,
            ) from exc
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc, url) from exc

    async def _fetch_with_slot(self, host: str, url: str) -> FetchResult:
        async with self._host_slot(host):
            return await self._do_fetch(url)

    async def _do_fetch(self, url: str) -> FetchResult:
        """Perform a single streamed GET, enforcing content type and size bound."""
        limit = self._settings.max_body_bytes
        async with self.client.stream("GET", url) as response:
            if not response.is_success:
                raise FetchError(
                    NetworkErrorKind.HTTP_STATUS,
                    f"Website returned {response.status_code} error",
                    url,
                    status_code=response.status_code,
                )

            content_type = response.headers.get("content-type", "")
            if not is_html_content_type(content_type):
                raise FetchError(
                    NetworkErrorKind.UNSUPPORTED_CONTENT,
                    f"Content type {content_type!r} is not an HTML document",
                    url,
                    status_code=response.status_code,
                )

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > limit:
                raise FetchError(
                    NetworkErrorKind.CONTENT_TOO_LARGE,
                    f"Declared body of {declared} bytes exceeds {limit} bytes",
                    url,
                    status_code=response.status_code,
                )

            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > limit:
                    raise FetchError(
                        NetworkErrorKind.CONTENT_TOO_LARGE,
                        f"Body exceeded {limit} bytes",
                        url,
                        status_code=response.status_code,
                    )

            encoding = response.encoding or "utf-8"
            try:
                text = body.decode(encoding, errors="replace")
            except LookupError:
                text = body.decode("utf-8", errors="replace")

            return FetchResult(
                url=str(response.url),
                body=text,
                content_type=content_type,
                status_code=response.status_code,
            )
