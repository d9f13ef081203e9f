"""Map pipeline failures to caller-visible error reports.

Every failure leaving the proxy pipeline goes through :func:`classify_error`.
The result is an :class:`ErrorReport` with a stable code, an HTTP status, a
message and one to four suggestions; or, for a DNS failure on one of the
demo hosts, a :class:`FallbackContent` placeholder page.
"""

from __future__ import annotations

from typing import Callable, Optional, Union

from embedproxy.core.security import UrlValidationError
from embedproxy.models.proxy.document import ErrorReport, FallbackContent
from embedproxy.services.proxy.fallback import render_fallback
from embedproxy.workers.fetcher import FetchError, NetworkErrorKind

MAX_SUGGESTIONS = 4

ENVIRONMENT_NOTE = (
    "Note: this environment has network restrictions that may prevent "
    "loading some websites"
)

GENERIC_SUGGESTIONS = [
    "Try a different website",
    "Check if the URL is correct",
    "Refresh the page and try again",
]

_NETWORK_REPORTS: dict[NetworkErrorKind, tuple[int, str, str, list[str]]] = {
    NetworkErrorKind.DNS_ERROR: (
        404,
        "DNS_ERROR",
        "Website not found or DNS resolution failed",
        [
            "Check the spelling of the domain name",
            "The domain may not exist or may have expired",
            "This environment may restrict DNS for external sites",
        ],
    ),
    NetworkErrorKind.CONNECTION_REFUSED: (
        502,
        "CONNECTION_REFUSED",
        "Connection refused by the website",
        [
            "The website might be blocking proxy requests",
            "Server might be down or overloaded",
            "Try again in a few minutes",
            "Visit the original website to check if it's accessible",
        ],
    ),
    NetworkErrorKind.TIMEOUT: (
        504,
        "TIMEOUT",
        "Request timeout - website took too long to respond",
        [
            "The website is responding slowly",
            "Try again in a few moments",
            "Try a faster loading website",
        ],
    ),
    NetworkErrorKind.CONTENT_TOO_LARGE: (
        413,
        "CONTENT_TOO_LARGE",
        "Website content is too large to embed",
        [
            "The website has too much content to display",
            "Try a simpler website",
            "Visit the original site for full content",
        ],
    ),
    NetworkErrorKind.UNSUPPORTED_CONTENT: (
        415,
        "UNSUPPORTED_CONTENT_TYPE",
        "Website returned content that is not an HTML page",
        [
            "Only HTML web pages can be embedded",
            "Link to images, PDFs and downloads directly instead",
            "Try the page that links to this file",
        ],
    ),
    NetworkErrorKind.CONNECTION_RESET: (
        502,
        "CONNECTION_RESET",
        "Connection was reset by the website",
        [
            "The website terminated the connection",
            "The site might have anti-bot protection",
            "Try a different URL or website",
        ],
    ),
}

_INPUT_SUGGESTIONS: dict[str, list[str]] = {
    "MISSING_URL": ["Pass the page to embed as ?url=https://example.com"],
    "INVALID_URL": [
        "Check if the URL is correct",
        "Use a full address such as https://example.com/page",
    ],
    "DISALLOWED_SCHEME": ["Only http:// and https:// addresses can be embedded"],
    "DISALLOWED_HOST": [
        "Internal and private network addresses cannot be embedded",
        "Use a publicly reachable website address",
    ],
}


def _http_status_report(status: int) -> tuple[int, str, list[str]]:
    message = f"Website returned {status} error"
    if status == 403:
        return 403, "Access denied by the website", [
            "The website is blocking proxy access",
            "Try a different website",
            "Some sites block automated requests for security",
        ]
    if status == 404:
        return 404, "Page not found on the website", [
            "Check if the URL path is correct",
            "The page might have been moved or deleted",
            "Try the website's homepage instead",
        ]
    if status >= 500:
        return status if status <= 599 else 502, message, [
            "The website is experiencing server issues",
            "Try again in a few minutes",
            "Contact the website administrator if the issue persists",
        ]
    if 400 <= status < 500:
        return status, message, list(GENERIC_SUGGESTIONS)
    # Unfollowed redirects and other non-2xx statuses are not errors we can forward
    return 502, message, list(GENERIC_SUGGESTIONS)


def _finish(suggestions: list[str], environment_note: bool) -> list[str]:
    suggestions = list(suggestions) or list(GENERIC_SUGGESTIONS)
    if environment_note and len(suggestions) < MAX_SUGGESTIONS:
        suggestions.append(ENVIRONMENT_NOTE)
    return suggestions[:MAX_SUGGESTIONS]


def input_error_report(code: str, message: str, target_url: Optional[str]) -> ErrorReport:
    status = 400 if code in ("MISSING_URL", "INVALID_URL") else 403
    return ErrorReport(
        internal_code=code,
        http_status=status,
        message=message,
        suggestions=_INPUT_SUGGESTIONS.get(code, GENERIC_SUGGESTIONS),
        target_url=target_url,
    )


def classify_error(
    exc: BaseException,
    target_url: str,
    *,
    include_details: bool = False,
    environment_note: bool = False,
    fallback: Callable[[str], Optional[str]] = render_fallback,
) -> Union[ErrorReport, FallbackContent]:
    """Classify *exc* raised while embedding *target_url*.

    Args:
        include_details: attach the raw exception text (non-production only).
        environment_note: append the restricted-environment note.
        fallback: renders demo content for allowlisted hosts on DNS failure.
    """
    details = str(exc) if include_details else None

    if isinstance(exc, UrlValidationError):
        report = input_error_report(exc.code, exc.reason, target_url)
        return report.model_copy(update={"details": details})

    if isinstance(exc, FetchError):
        if exc.kind is NetworkErrorKind.DNS_ERROR:
            html = fallback(target_url)
            if html is not None:
                return FallbackContent(html=html, target_url=target_url)

        if exc.kind is NetworkErrorKind.HTTP_STATUS and exc.status_code is not None:
            status, message, suggestions = _http_status_report(exc.status_code)
            code = f"HTTP_{exc.status_code}"
        elif exc.kind in _NETWORK_REPORTS:
            status, code, message, suggestions = _NETWORK_REPORTS[exc.kind]
        else:
            status, code, message, suggestions = (
                500, "UNKNOWN_ERROR", "Failed to load the website", []
            )
    else:
        status, code, message, suggestions = (
            500, "UNKNOWN_ERROR", "Failed to load the website", []
        )

    return ErrorReport(
        internal_code=code,
        http_status=status,
        message=message,
        suggestions=_finish(suggestions, environment_note),
        target_url=target_url,
        details=details,
    )
