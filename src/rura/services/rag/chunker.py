from __future__ import annotations

import re
from typing import Protocol

from rura.services.rag.fingerprint import fingerprint, normalize_text
from rura.services.rag.types import Chunk, ExtractedPage

SENTENCE_END_TOKENS = {".", "!", "?"}
MAX_TITLE_CHARS = 128
MAX_URL_CHARS = 128


class Tokenizer(Protocol):
    def spans(self, text: str) -> list[tuple[int, int]]: ...

    def count(self, text: str) -> int: ...


class RegexTokenizer:
    """Word runs and single punctuation marks, roughly what BPE vocabularies split on."""

    def __init__(self, pattern: str = r"\w+|[^\w\s]") -> None:
        self._pattern = re.compile(pattern)

    def spans(self, text: str) -> list[tuple[int, int]]:
        return [match.span() for match in self._pattern.finditer(text)]

    def count(self, text: str) -> int:
        return len(self.spans(text))


DEFAULT_TOKENIZER = RegexTokenizer()


def _validate(max_tokens: int, overlap_tokens: int) -> None:
    if max_tokens <= 0:
        raise ValueError("max_tokens must be > 0")
    if overlap_tokens < 0:
        raise ValueError("overlap_tokens must be >= 0")
    if overlap_tokens >= max_tokens:
        raise ValueError("overlap_tokens must be smaller than max_tokens")


def _window_end(
    text: str,
    spans: list[tuple[int, int]],
    *,
    start: int,
    max_tokens: int,
    overlap_tokens: int,
) -> int:
    end = min(len(spans), start + max_tokens)
    if end == len(spans):
        return end

    # cut after the last sentence end that still lets the next window advance
    for index in range(end - 1, start, -1):
        token_start, token_end = spans[index]
        if text[token_start:token_end] in SENTENCE_END_TOKENS and index + 1 - overlap_tokens > start:
            return index + 1
    return end


def chunk_text(
    text: str,
    *,
    max_tokens: int,
    overlap_tokens: int,
    tokenizer: Tokenizer = DEFAULT_TOKENIZER,
) -> list[tuple[str, int]]:
    _validate(max_tokens, overlap_tokens)

    spans = tokenizer.spans(text)
    chunks: list[tuple[str, int]] = []
    start = 0

    while start < len(spans):
        end = _window_end(
            text,
            spans,
            start=start,
            max_tokens=max_tokens,
            overlap_tokens=overlap_tokens,
        )
        chunk = text[spans[start][0] : spans[end - 1][1]].strip()
        if chunk:
            chunks.append((chunk, end - start))

        if end >= len(spans):
            break
        start = max(end - overlap_tokens, start + 1)

    return chunks


def chunk_page(
    page: ExtractedPage,
    *,
    collection: str,
    max_tokens: int,
    overlap_tokens: int,
    tokenizer: Tokenizer = DEFAULT_TOKENIZER,
) -> list[Chunk]:
    pieces = chunk_text(
        page.text,
        max_tokens=max_tokens,
        overlap_tokens=overlap_tokens,
        tokenizer=tokenizer,
    )

    return [
        Chunk(
            url=page.url,
            title=page.title,
            ordinal=ordinal,
            text=normalize_text(piece),
            token_count=token_count,
            fingerprint=fingerprint(piece),
            collection=collection,
        )
        for ordinal, (piece, token_count) in enumerate(pieces)
    ]


def summary_chunk(
    page: ExtractedPage,
    summary: str,
    *,
    collection: str,
    tokenizer: Tokenizer = DEFAULT_TOKENIZER,
) -> Chunk:
    return Chunk(
        url=page.url,
        title=page.title,
        ordinal=0,
        text=normalize_text(summary),
        token_count=tokenizer.count(summary),
        fingerprint=fingerprint(summary),
        collection=collection,
    )


def embedding_input(chunk: Chunk) -> str:
    """Text sent to the embedder: the chunk prefixed with its page title and URL.

    Only the chunk text is stored and fingerprinted.
    """
    title = chunk.title[:MAX_TITLE_CHARS].strip()
    url = chunk.url[:MAX_URL_CHARS]
    return f"Title: {title} URL: {url} Content: {chunk.text}"
