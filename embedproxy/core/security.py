"""URL validation and SSRF guard.

Every target URL passes through :func:`validate_target_url` before any
network activity.  The check is purely syntactic: no DNS lookups, no I/O.

Rules, applied in order:

1. The string must parse as an absolute URL with a host (``InvalidUrlError``).
2. The scheme must be ``http`` or ``https`` (``DisallowedSchemeError``).
3. In restricted mode the host must not be loopback, a private or
   link-local address, or a ``.local`` name (``DisallowedHostError``).
   Permissive mode (``allow_loopback=True``) lets loopback through and
   nothing else.

Numeric hosts are read the way system resolvers read them, so shorthand
forms such as ``127.1`` or ``0x7f000001`` cannot slip past the range checks.
A numeric-looking host that is not a valid address is an invalid URL.
"""

from __future__ import annotations

import ipaddress
import re
from enum import Enum
from urllib.parse import SplitResult, urlsplit

import httpx

ALLOWED_SCHEMES = ("http", "https")

LOOPBACK_HOSTNAMES = frozenset({"localhost", "localhost.localdomain"})

LOOPBACK_NETWORKS = (
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
)

PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),  # link-local
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("fc00::/7"),  # IPv6 unique-local
    ipaddress.ip_network("fe80::/10"),  # IPv6 link-local
    ipaddress.ip_network("::/128"),  # unspecified
)

_IPV4_PART_RE = re.compile(r"^(?:0x[0-9a-f]*|[0-9]+)$", re.I)

FORBIDDEN_HOST_CHARS = re.compile(r"[\x00-\x20#%/:<>?@\[\\\]^|\x7f]")


class ValidationMode(str, Enum):
    RESTRICTED = "restricted"
    PERMISSIVE = "permissive"


class UrlValidationError(ValueError):
    """Base class for target URLs rejected before any network call."""

    code = "INVALID_URL"
    status_code = 400

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(reason)
        self.url = url
        self.reason = reason


class InvalidUrlError(UrlValidationError):
    code = "INVALID_URL"
    status_code = 400


class DisallowedSchemeError(UrlValidationError):
    code = "DISALLOWED_SCHEME"
    status_code = 403


class DisallowedHostError(UrlValidationError):
    code = "DISALLOWED_HOST"
    status_code = 403


def _parse_ipv4_part(part: str) -> int:
    if not _IPV4_PART_RE.match(part):
        raise ValueError(f"not an IPv4 number: {part!r}")
    if part.startswith("0x"):
        return int(part[2:] or "0", 16)
    if len(part) > 1 and part.startswith("0"):
        return int(part, 8)
    return int(part)


def _ends_in_number(host: str) -> bool:
    labels = host.split(".")
    if len(labels) > 1 and labels[-1] == "":
        labels.pop()
    return bool(_IPV4_PART_RE.match(labels[-1]))


def parse_ipv4_host(host: str) -> ipaddress.IPv4Address:
    """Parse the numeric IPv4 shorthands resolvers accept, like ``inet_aton``.

    ``127.1``, ``0x7f000001``, ``0177.0.0.1`` and ``2130706433`` all yield
    ``127.0.0.1``.  Raises ``ValueError`` for anything that is not one.
    """
    labels = host.lower().split(".")
    if len(labels) > 1 and labels[-1] == "":
        labels.pop()
    if not 1 <= len(labels) <= 4:
        raise ValueError(f"too many parts in IPv4 host {host!r}")
    numbers = [_parse_ipv4_part(label) for label in labels]
    if any(n > 255 for n in numbers[:-1]) or numbers[-1] >= 256 ** (5 - len(numbers)):
        raise ValueError(f"IPv4 host out of range: {host!r}")
    value = numbers[-1]
    for i, n in enumerate(numbers[:-1]):
        value += n << (8 * (3 - i))
    return ipaddress.IPv4Address(value)


def _parse_ip(hostname: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Interpret *hostname* as an IP address, or return ``None`` for a name.

    A host whose last label is numeric is always an address; if it does not
    parse as one, ``ValueError`` is raised.
    """
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        if not _ends_in_number(hostname):
            return None
        return parse_ipv4_host(hostname)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def is_loopback_host(hostname: str) -> bool:
    host = hostname.lower().rstrip(".")
    if host in LOOPBACK_HOSTNAMES or host.endswith(".localhost"):
        return True
    try:
        ip = _parse_ip(host)
    except ValueError:
        return False
    return ip is not None and any(ip in net for net in LOOPBACK_NETWORKS)


def is_internal_host(hostname: str) -> bool:
    """Return True for private-range addresses and ``.local`` names.

    Malformed numeric hosts count as internal.
    """
    host = hostname.lower().rstrip(".")
    if host.endswith(".local"):
        return True
    try:
        ip = _parse_ip(host)
    except ValueError:
        return True
    return ip is not None and any(ip in net for net in PRIVATE_NETWORKS)


def validate_target_url(raw_url: str, allow_loopback: bool = False) -> SplitResult:
    """Validate *raw_url* and return its parsed form.

    Raises:
        InvalidUrlError: not an absolute URL with a well-formed host.
        DisallowedSchemeError: scheme other than http/https.
        DisallowedHostError: internal-network host in restricted mode.
    """
    url = (raw_url or "").strip()
    try:
        parsed = urlsplit(url)
        hostname = parsed.hostname
        parsed.port  # noqa: B018 - raises ValueError on a malformed port
    except ValueError as exc:
        raise InvalidUrlError(url, f"Invalid URL provided: {exc}") from exc

    if not parsed.scheme:
        raise InvalidUrlError(url, "Invalid URL provided")

    # mailto:, javascript:, file:/// have no host but are still absolute URLs
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise DisallowedSchemeError(
            url, f"Only HTTP and HTTPS URLs are allowed, got {parsed.scheme!r}"
        )

    if not parsed.netloc or not hostname:
        raise InvalidUrlError(url, "Invalid URL provided")

    try:
        if _parse_ip(hostname) is None and FORBIDDEN_HOST_CHARS.search(hostname):
            raise ValueError(f"forbidden character in host {hostname!r}")
    except ValueError as exc:
        raise InvalidUrlError(url, f"Invalid URL provided: {exc}") from exc

    if is_loopback_host(hostname):
        if not allow_loopback:
            raise DisallowedHostError(
                url, "Access to internal networks is not allowed"
            )
    elif is_internal_host(hostname):
        raise DisallowedHostError(url, "Access to internal networks is not allowed")

    try:
        httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise InvalidUrlError(url, f"Invalid URL provided: {exc}") from exc

    return parsed


def origin_of(parsed: SplitResult) -> str:
    """``scheme://host[:port]`` of a parsed URL, without user info."""
    netloc = parsed.netloc.rpartition("@")[2]
    return f"{parsed.scheme.lower()}://{netloc}"
