"""HTML rewriting for embedded pages.

:class:`HtmlRewriter` applies, in this order:

1. drop tracking ``<script>`` elements (denylisted ``src`` or inline calls),
2. drop denylisted ``<iframe>``, ``<object>`` and ``<embed>`` elements,
3. absolutize root-relative and dot-relative ``href``/``src`` values of
   anchors, stylesheets/links, images and scripts,
4. insert ``<base href="origin/">`` as the first child of ``<head>``,
5. append the embed style block and prepend the informational banner.

Documents up to ``large_document_bytes`` are rewritten on a parsed tree
(BeautifulSoup); larger ones with a single-pass text strategy.  Both obey
the same contract and neither ever raises: on failure the original markup
is returned unchanged.
"""

from __future__ import annotations

import html as html_lib
import logging
import re
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Doctype

from embedproxy.core.security import origin_of

logger = logging.getLogger(__name__)

TRACKING_SRC_MARKERS = (
    "analytics",
    "gtag",
    "googletagmanager",
    "doubleclick",
    "googlesyndication",
    "connect.facebook.net",
    "facebook.com/plugins",
    "facebook.com/tr",
    "platform.twitter.com",
    "static.hotjar.com",
)

TRACKING_SRC_RE = re.compile("|".join(map(re.escape, TRACKING_SRC_MARKERS)), re.I)
TRACKING_INLINE_RE = re.compile(
    r"\bgtag\s*\(|\bga\s*\(|\b_gaq\b|\bfbq\s*\(|GoogleAnalyticsObject"
)

URL_ATTRS = {"a": "href", "link": "href", "img": "src", "script": "src"}
EMBED_TAGS = ("iframe", "object", "embed")

BANNER_CLASS = "embedproxy-banner"

EMBED_STYLE = f"""
body {{ margin: 0 !important; padding-top: 35px !important; }}
.{BANNER_CLASS} {{
    position: fixed; top: 0; left: 0; right: 0; z-index: 2147483647;
    background: #007bff; color: #fff; padding: 5px 10px;
    font: 12px/1.6 -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
    text-align: center;
}}
.{BANNER_CLASS} a {{ color: #fff; font-weight: 600; text-decoration: underline; }}
"""


def is_tracking_src(value: str | None) -> bool:
    return bool(value) and TRACKING_SRC_RE.search(value) is not None


def is_tracking_inline(body: str | None) -> bool:
    return bool(body) and TRACKING_INLINE_RE.search(body) is not None


def needs_absolutizing(value: str | None) -> bool:
    """Root-relative (``/x`` but not ``//x``) and dot-relative (``./x``, ``../x``)."""
    if not value:
        return False
    v = value.strip()
    if v.startswith("/"):
        return not v.startswith("//")
    return v.startswith("./") or v.startswith("../")


def absolutize(value: str, origin: str, base_url: str) -> str:
    v = value.strip()
    if v.startswith("/"):
        return origin + v
    return urljoin(base_url, v)


class HtmlRewriter:
    def __init__(self, proxy_name: str = "EmbedProxy", large_document_bytes: int = 1024 * 1024) -> None:
        self.proxy_name = proxy_name
        self.large_document_bytes = large_document_bytes

    def rewrite(self, html: str, base_url: str) -> str:
        """Return *html* patched for embedding under *base_url*.

        Never raises; a parse or rewrite failure returns *html* unchanged.
        """
        try:
            origin = origin_of(urlsplit(base_url))
            if len(html.encode("utf-8", errors="ignore")) > self.large_document_bytes:
                return self._rewrite_text(html, base_url, origin)
            return self._rewrite_tree(html, base_url, origin)
        except Exception:
            logger.warning(
                "Rewrite failed for %s; serving original markup", base_url, exc_info=True
            )
            return html

    def banner_text(self, origin: str) -> str:
        return f"\U0001f4ce {self.proxy_name} is displaying {origin} · "

    # ------------------------------------------------------------------
    # Tree strategy
    # ------------------------------------------------------------------

    def _rewrite_tree(self, html: str, base_url: str, origin: str) -> str:
        soup = BeautifulSoup(html, "html.parser")

        for script in soup.find_all("script"):
            if is_tracking_src(script.get("src")) or is_tracking_inline(script.string):
                script.decompose()

        for tag in soup.find_all(EMBED_TAGS):
            if is_tracking_src(tag.get("src")) or is_tracking_src(tag.get("data")):
                tag.decompose()

        for tag in soup.find_all(list(URL_ATTRS)):
            attr = URL_ATTRS[tag.name]
            value = tag.get(attr)
            if isinstance(value, str) and needs_absolutizing(value):
                tag[attr] = absolutize(value, origin, base_url)

        head = self._ensure_head(soup)
        for base in soup.find_all("base"):
            base.decompose()
        head.insert(0, soup.new_tag("base", href=f"{origin}/"))

        style = soup.new_tag("style")
        style.string = EMBED_STYLE
        head.append(style)

        body = self._ensure_body(soup)
        banner = soup.new_tag("div", attrs={"class": BANNER_CLASS})
        banner.append(self.banner_text(origin))
        link = soup.new_tag("a", href=base_url, target="_blank", rel="noopener noreferrer")
        link.string = "Open original"
        banner.append(link)
        body.insert(0, banner)

        return str(soup)

    @staticmethod
    def _ensure_head(soup: BeautifulSoup):
        if soup.head is not None:
            return soup.head
        head = soup.new_tag("head")
        if soup.html is not None:
            soup.html.insert(0, head)
        else:
            index = 0
            for i, child in enumerate(soup.contents):
                if isinstance(child, Doctype):
                    index = i + 1
            soup.insert(index, head)
        return head

    @staticmethod
    def _ensure_body(soup: BeautifulSoup):
        if soup.body is not None:
            return soup.body
        body = soup.new_tag("body")
        parent = soup.html if soup.html is not None else soup
        for child in list(parent.contents):
            if child is soup.head or isinstance(child, Doctype):
                continue
            body.append(child.extract())
        parent.append(body)
        return body

    # ------------------------------------------------------------------
    # Text strategy (large documents)
    # ------------------------------------------------------------------

    _SCRIPT_RE = re.compile(r"<script\b([^>]*)>(.*?)</script\s*>", re.I | re.S)
    _EMBED_PAIRED_RE = re.compile(r"<(iframe|object)\b([^>]*)>.*?</\1\s*>", re.I | re.S)
    _EMBED_VOID_RE = re.compile(r"<embed\b([^>]*)/?>", re.I)
    _URL_TAG_RE = re.compile(r"<(a|link|img|script)\b[^>]*>", re.I)
    _ATTR_RE = re.compile(r"""(\s(href|src|data)\s*=\s*)(["'])(.*?)\3""", re.I | re.S)
    _BASE_RE = re.compile(r"<base\b[^>]*>", re.I)
    _HEAD_OPEN_RE = re.compile(r"<head(?:\s[^>]*)?>", re.I)
    _HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.I)
    _HTML_OPEN_RE = re.compile(r"<html(?:\s[^>]*)?>", re.I)
    _BODY_OPEN_RE = re.compile(r"<body(?:\s[^>]*)?>", re.I)
    _DOCTYPE_RE = re.compile(r"\s*<!doctype[^>]*>", re.I)

    @classmethod
    def _attr(cls, attrs: str, name: str) -> str | None:
        for match in cls._ATTR_RE.finditer(attrs):
            if match.group(2).lower() == name:
                return html_lib.unescape(match.group(4))
        return None

    def _rewrite_text(self, html: str, base_url: str, origin: str) -> str:
        def drop_script(m: re.Match) -> str:
            if is_tracking_src(self._attr(m.group(1), "src")) or is_tracking_inline(m.group(2)):
                return ""
            return m.group(0)

        def drop_embed(m: re.Match) -> str:
            attrs = m.group(m.lastindex)
            if is_tracking_src(self._attr(attrs, "src")) or is_tracking_src(self._attr(attrs, "data")):
                return ""
            return m.group(0)

        def fix_tag(m: re.Match) -> str:
            wanted = URL_ATTRS[m.group(1).lower()]

            def fix_attr(a: re.Match) -> str:
                value = html_lib.unescape(a.group(4))
                if a.group(2).lower() != wanted or not needs_absolutizing(value):
                    return a.group(0)
                fixed = html_lib.escape(absolutize(value, origin, base_url), quote=True)
                return f'{a.group(1)}"{fixed}"'

            return self._ATTR_RE.sub(fix_attr, m.group(0))

        html = self._SCRIPT_RE.sub(drop_script, html)
        html = self._EMBED_PAIRED_RE.sub(drop_embed, html)
        html = self._EMBED_VOID_RE.sub(drop_embed, html)
        html = self._URL_TAG_RE.sub(fix_tag, html)
        html = self._BASE_RE.sub("", html)

        base_tag = f'<base href="{html_lib.escape(origin, quote=True)}/">'
        head_open = self._HEAD_OPEN_RE.search(html)
        if head_open is None:
            html_open = self._HTML_OPEN_RE.search(html) or self._DOCTYPE_RE.match(html)
            at = html_open.end() if html_open else 0
            html = f"{html[:at]}<head></head>{html[at:]}"
            head_open = self._HEAD_OPEN_RE.search(html)
        html = f"{html[:head_open.end()]}{base_tag}{html[head_open.end():]}"

        style_tag = f"<style>{EMBED_STYLE}</style>"
        head_close = self._HEAD_CLOSE_RE.search(html)
        if head_close is not None:
            html = f"{html[:head_close.start()]}{style_tag}{html[head_close.start():]}"
        else:
            at = head_open.end() + len(base_tag)
            html = f"{html[:at]}{style_tag}{html[at:]}"

        banner = (
            f'<div class="{BANNER_CLASS}">{html_lib.escape(self.banner_text(origin))}'
            f'<a href="{html_lib.escape(base_url, quote=True)}" target="_blank" '
            f'rel="noopener noreferrer">Open original</a></div>'
        )
        body_open = self._BODY_OPEN_RE.search(html)
        if body_open is not None:
            at = body_open.end()
        else:
            head_close = self._HEAD_CLOSE_RE.search(html)
            at = head_close.end() if head_close else len(html)
        return f"{html[:at]}{banner}{html[at:]}"
