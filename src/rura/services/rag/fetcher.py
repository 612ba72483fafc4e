from __future__ import annotations

from datetime import datetime, timezone
import re

from bs4 import BeautifulSoup
import httpx

from rura.services.rag.types import Document, ExtractedPage

NON_CONTENT_TAGS = ("script", "style", "noscript", "nav", "template", "iframe", "svg")
_WHITESPACE_RE = re.compile(r"\s+")


class FetchError(RuntimeError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class ExtractionError(RuntimeError):
    pass


def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


class PageFetcher:
    def __init__(self, client: httpx.AsyncClient, *, timeout_seconds: float = 20.0) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds

    async def fetch(self, url: str) -> Document:
        try:
            response = await self._client.get(url, timeout=self._timeout_seconds, follow_redirects=True)
        except httpx.TimeoutException as exc:
            raise FetchError(url, f"timed out after {self._timeout_seconds:g}s") from exc
        except httpx.HTTPError as exc:
            raise FetchError(url, str(exc) or type(exc).__name__) from exc

        if not response.is_success:
            raise FetchError(url, f"HTTP {response.status_code}")

        return Document(
            url=url,
            title="",
            html=response.text,
            fetched_at=datetime.now(timezone.utc),
        )

    def extract_text(self, document: Document) -> ExtractedPage:
        soup = BeautifulSoup(document.html, "html.parser")

        title_tag = soup.find("title")
        title = _collapse(title_tag.get_text()) if title_tag else ""

        for tag in soup(NON_CONTENT_TAGS):
            tag.decompose()

        root = soup.body or soup
        text = _collapse(root.get_text(separator=" "))
        if not text:
            raise ExtractionError(f"no readable text in {document.url}")

        return ExtractedPage(
            url=document.url,
            title=title or document.title or document.url,
            text=text,
            fetched_at=document.fetched_at,
        )
