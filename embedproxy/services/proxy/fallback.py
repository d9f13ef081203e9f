"""Demo placeholder pages for a fixed set of well-known hosts.

Used only when name resolution fails for one of :data:`FALLBACK_HOSTS`,
so demonstrations keep working inside network-restricted environments.
The match is on the exact hostname; subdomains and look-alikes get the
normal ``DNS_ERROR`` report.
"""

from __future__ import annotations

from html import escape
from typing import NamedTuple, Optional
from urllib.parse import urlsplit


class DemoPage(NamedTuple):
    title: str
    heading: str
    summary: str
    highlights: tuple[str, ...]


FALLBACK_HOSTS: dict[str, DemoPage] = {
    "example.com": DemoPage(
        title="Example Domain (Demo Mode)",
        heading="Example Domain",
        summary=(
            "This domain is for use in illustrative examples in documents. "
            "With working DNS this frame would show the real example.com page."
        ),
        highlights=(
            "Server-side content fetching",
            "Relative link rewriting",
            "Tracking script removal",
        ),
    ),
    "httpbin.org": DemoPage(
        title="HTTPBin.org (Demo Mode)",
        heading="HTTPBin.org",
        summary=(
            "HTTP request and response testing service. With working DNS this "
            "frame would show the real httpbin.org interface."
        ),
        highlights=(
            "HTTP methods and status codes",
            "Request inspection: headers, IP, user agent",
            "JSON, XML and HTML response formats",
        ),
    ),
    "github.com": DemoPage(
        title="GitHub (Demo Mode)",
        heading="GitHub",
        summary=(
            "Software development platform. With working DNS this frame would "
            "show the real github.com page."
        ),
        highlights=(
            "Repositories, issues and pull requests",
            "Code review and collaboration",
            "Actions and package hosting",
        ),
    ),
}

_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<meta name="robots" content="noindex">
<title>{title}</title>
<style>
body {{ margin: 0; padding: 60px 20px 20px; background: #f8f9fa;
       font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; }}
.demo-notice {{ position: fixed; top: 0; left: 0; right: 0; z-index: 9999; padding: 10px 20px;
               background: #ee5a24; color: #fff; font-size: 14px; text-align: center; }}
.demo-notice a {{ color: #fff3cd; font-weight: 600; }}
main {{ max-width: 800px; margin: 0 auto; background: #fff; border-radius: 8px; padding: 30px; }}
</style>
</head>
<body data-content-source="demo-fallback">
<div class="demo-notice">DEMO MODE: simulated content, the real site could not be resolved.
 <a href="{url}" target="_blank" rel="noopener noreferrer">Visit real site</a></div>
<main>
<h1>{heading} <small>(Demo Mode)</small></h1>
<p>{summary}</p>
<ul>
{items}
</ul>
<p><strong>Note:</strong> this placeholder was generated locally by {proxy_name}; none of it came from {host}.</p>
</main>
</body>
</html>
"""


def fallback_hostname(target_url: str) -> Optional[str]:
    """Return the allowlisted hostname of *target_url*, or ``None``."""
    try:
        hostname = (urlsplit(target_url).hostname or "").lower()
    except ValueError:
        return None
    return hostname if hostname in FALLBACK_HOSTS else None


def render_fallback(target_url: str, proxy_name: str = "EmbedProxy") -> Optional[str]:
    """Render the labeled placeholder for *target_url*, or ``None`` if not allowlisted."""
    hostname = fallback_hostname(target_url)
    if hostname is None:
        return None
    page = FALLBACK_HOSTS[hostname]
    items = "\n".join(f"<li>{escape(item)}</li>" for item in page.highlights)
    return _TEMPLATE.format(
        title=escape(page.title),
        heading=escape(page.heading),
        summary=escape(page.summary),
        items=items,
        url=escape(target_url, quote=True),
        proxy_name=escape(proxy_name),
        host=escape(hostname),
    )
