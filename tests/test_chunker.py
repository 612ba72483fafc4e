from datetime import datetime, timezone

import pytest

from rura.services.rag.chunker import (
    DEFAULT_TOKENIZER,
    chunk_page,
    chunk_text,
    embedding_input,
    summary_chunk,
)
from rura.services.rag.fingerprint import fingerprint
from rura.services.rag.types import ExtractedPage


def _page(text: str) -> ExtractedPage:
    return ExtractedPage(
        url="https://example.com/guide",
        title="Guide",
        text=text,
        fetched_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def test_sentences_keep_their_order() -> None:
    chunks = chunk_page(_page("A. B. C."), collection="docs_basic", max_tokens=2, overlap_tokens=0)

    assert [chunk.text for chunk in chunks] == ["A.", "B.", "C."]
    assert [chunk.ordinal for chunk in chunks] == [0, 1, 2]
    assert all(chunk.collection == "docs_basic" for chunk in chunks)


def test_windows_overlap_by_requested_tokens() -> None:
    chunks = chunk_text(
        "one two three four five six seven eight",
        max_tokens=4,
        overlap_tokens=2,
    )

    assert chunks == [
        ("one two three four", 4),
        ("three four five six", 4),
        ("five six seven eight", 4),
    ]


def test_window_is_cut_after_sentence_end() -> None:
    chunks = chunk_text(
        "Pumps need oil. Valves need checks every week",
        max_tokens=6,
        overlap_tokens=0,
    )

    assert chunks[0] == ("Pumps need oil.", 4)
    assert chunks[1][0].startswith("Valves")


def test_every_chunk_respects_token_budget() -> None:
    text = " ".join(f"word{index}" + ("." if index % 7 == 0 else "") for index in range(500))

    chunks = chunk_text(text, max_tokens=32, overlap_tokens=5)

    assert chunks
    for chunk, token_count in chunks:
        assert chunk.strip()
        assert 1 <= token_count <= 32
        assert DEFAULT_TOKENIZER.count(chunk) == token_count
    assert chunks[-1][0].endswith("word499")


def test_chunking_is_deterministic() -> None:
    page = _page("Maintenance schedules matter. " * 40)

    first = chunk_page(page, collection="c", max_tokens=20, overlap_tokens=4)
    second = chunk_page(page, collection="c", max_tokens=20, overlap_tokens=4)

    assert first == second
    assert [chunk.fingerprint for chunk in first] == [fingerprint(chunk.text) for chunk in first]


def test_blank_text_produces_no_chunks() -> None:
    assert chunk_text("   \n\t ", max_tokens=8, overlap_tokens=0) == []


@pytest.mark.parametrize(
    ("max_tokens", "overlap_tokens"),
    [(0, 0), (8, -1), (8, 8)],
)
def test_invalid_window_parameters_are_rejected(max_tokens: int, overlap_tokens: int) -> None:
    with pytest.raises(ValueError):
        chunk_text("some text", max_tokens=max_tokens, overlap_tokens=overlap_tokens)


def test_embedding_input_prefixes_truncated_title_and_url() -> None:
    page = ExtractedPage(
        url="https://example.com/" + "p" * 200,
        title="T" * 200,
        text="Valves seal.",
        fetched_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    chunk = chunk_page(page, collection="docs_basic", max_tokens=8, overlap_tokens=0)[0]

    text = embedding_input(chunk)

    assert text.startswith(f"Title: {'T' * 128} URL: {page.url[:128]} Content: ")
    assert text.endswith("Content: Valves seal.")
    assert chunk.text == "Valves seal."
    assert chunk.fingerprint == fingerprint("Valves seal.")


def test_summary_chunk_is_one_record_for_the_page() -> None:
    chunk = summary_chunk(_page("Long text."), "  Short   text. ", collection="docs_summary")

    assert chunk.ordinal == 0
    assert chunk.text == "Short text."
    assert chunk.collection == "docs_summary"
    assert chunk.fingerprint == fingerprint("Short text.")
    assert chunk.url == "https://example.com/guide"
