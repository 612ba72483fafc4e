"""Sitemap discovery.

Sitemap indexes are walked breadth-first with a visited set, so indexes that
reference themselves or each other terminate. Unreachable or malformed
sitemaps are logged and contribute no URLs; resolution itself never fails.
"""

from __future__ import annotations

from collections import deque
from collections.abc import AsyncIterator
import logging
import xml.etree.ElementTree as ET

import httpx

from rura.services.rag.types import SitemapEntry

logger = logging.getLogger(__name__)

SITEMAP_FILENAME = "sitemap.xml"


class SitemapParseError(ValueError):
    pass


def require_site_url(url: str) -> str:
    url = url.strip()
    scheme, _, rest = url.partition("://")
    if scheme not in ("http", "https") or not rest.strip("/"):
        raise ValueError(f"url must be an http(s) URL: {url!r}")
    return url


def sitemap_location(root_url: str, sitemap_url: str | None = None) -> str:
    if sitemap_url:
        return sitemap_url
    if root_url.endswith(SITEMAP_FILENAME):
        return root_url
    return f"{root_url.rstrip('/')}/{SITEMAP_FILENAME}"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, name: str) -> str | None:
    for child in element:
        if _local_name(child.tag) == name and child.text and child.text.strip():
            return child.text.strip()
    return None


def parse_sitemap(xml_text: str) -> tuple[str, list[tuple[str, str | None]]]:
    """Return the document kind and its ``(loc, lastmod)`` entries in document order."""
    try:
        root = ET.fromstring(xml_text.strip())
    except ET.ParseError as exc:
        raise SitemapParseError(f"malformed sitemap: {exc}") from exc

    kind = _local_name(root.tag)
    if kind == "urlset":
        entry_tag = "url"
    elif kind == "sitemapindex":
        entry_tag = "sitemap"
    else:
        raise SitemapParseError(f"unexpected sitemap root element <{kind}>")

    entries: list[tuple[str, str | None]] = []
    for element in root:
        if _local_name(element.tag) != entry_tag:
            continue
        loc = _child_text(element, "loc")
        if loc:
            entries.append((loc, _child_text(element, "lastmod")))
    return kind, entries


async def _fetch_sitemap(client: httpx.AsyncClient, url: str, timeout_seconds: float) -> str | None:
    try:
        response = await client.get(url, timeout=timeout_seconds, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Failed to fetch sitemap %s: %s", url, exc)
        return None
    return response.text


async def resolve_sitemap(
    root_url: str,
    *,
    client: httpx.AsyncClient,
    sitemap_url: str | None = None,
    max_sitemaps: int = 50,
    timeout_seconds: float = 20.0,
) -> AsyncIterator[SitemapEntry]:
    pending: deque[str] = deque([sitemap_location(root_url, sitemap_url)])
    visited_sitemaps: set[str] = set()
    seen_urls: set[str] = set()

    while pending and len(visited_sitemaps) < max_sitemaps:
        current = pending.popleft()
        if current in visited_sitemaps:
            continue
        visited_sitemaps.add(current)

        body = await _fetch_sitemap(client, current, timeout_seconds)
        if body is None:
            continue

        try:
            kind, entries = parse_sitemap(body)
        except SitemapParseError as exc:
            logger.warning("Skipping sitemap %s: %s", current, exc)
            continue

        if kind == "sitemapindex":
            for loc, _ in entries:
                if loc not in visited_sitemaps:
                    pending.append(loc)
            continue

        for loc, lastmod in entries:
            if loc in seen_urls:
                continue
            seen_urls.add(loc)
            yield SitemapEntry(url=loc, sitemap_url=current, lastmod=lastmod)

    if pending:
        logger.warning("Stopped after %d sitemaps, %d left unvisited", max_sitemaps, len(pending))
