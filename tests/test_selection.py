"""Tests for deduplication and budget-aware context selection."""
from __future__ import annotations

from typing import Optional

from docchat.models import ChunkLocation, ContextMetadata, ContextType, DocumentContext, SearchResult
from docchat.selection import (
    dedup_contexts,
    dedup_results,
    optimize_for_budget,
    select_within_budget,
    truncate_context,
)
from docchat.tokenizer import calculate_checksum, estimate_token_count


def _context(
    content: str,
    *,
    document_id: str = "doc-a",
    context_type: ContextType = ContextType.SEMANTIC_CHUNK,
    score: Optional[float] = None,
    tokens: Optional[int] = None,
) -> DocumentContext:
    return DocumentContext(
        document_id=document_id,
        document_title=document_id.upper(),
        context_type=context_type,
        content=content,
        metadata=ContextMetadata(
            extraction_method="test",
            token_count=estimate_token_count(content) if tokens is None else tokens,
            checksum=calculate_checksum(content),
        ),
        relevance_score=score,
    )


def test_greedy_selection_respects_budget_and_diversity() -> None:
    scores = {
        "doc-a": [0.9, 0.88, 0.86, 0.84],
        "doc-b": [0.75, 0.74, 0.73],
        "doc-c": [0.7, 0.69, 0.68],
    }
    candidates = [
        _context(f"{document_id} chunk {index}", document_id=document_id, score=score, tokens=500)
        for document_id, values in scores.items()
        for index, score in enumerate(values)
    ]
    assert len(candidates) == 10

    result = select_within_budget([], candidates, 2000, diversity_bonus=0.2)

    assert len(result.selected) == 4
    assert len(result.dropped) == 6
    assert result.used_tokens == 2000
    assert [context.content for context in result.selected] == [
        "doc-a chunk 0",
        "doc-a chunk 1",
        "doc-b chunk 0",
        "doc-c chunk 0",
    ]


def test_without_bonus_selection_follows_relevance() -> None:
    candidates = [
        _context("a0", document_id="doc-a", score=0.9, tokens=500),
        _context("a1", document_id="doc-a", score=0.8, tokens=500),
        _context("b0", document_id="doc-b", score=0.7, tokens=500),
    ]

    result = select_within_budget([], candidates, 1000, diversity_bonus=0.0)

    assert [context.content for context in result.selected] == ["a0", "a1"]


def test_candidate_that_does_not_fit_is_skipped_not_terminal() -> None:
    candidates = [
        _context("big", score=0.9, tokens=900),
        _context("small", document_id="doc-b", score=0.1, tokens=100),
    ]

    result = select_within_budget([], candidates, 500)

    assert [context.content for context in result.selected] == ["small"]
    assert [context.content for context in result.dropped] == ["big"]
    assert not result.nothing_fit


def test_nothing_fit_is_reported() -> None:
    result = select_within_budget([], [_context("huge", tokens=5000, score=1.0)], 4000)

    assert result.selected == []
    assert result.nothing_fit


def test_pinned_contexts_come_first_and_large_ones_are_truncated() -> None:
    reference = _context(
        "word " * 20000, document_id="doc-r", context_type=ContextType.REFERENCE
    )
    candidate = _context("retrieved", document_id="doc-b", score=0.9)

    result = select_within_budget([reference], [candidate], 4000)

    pinned = result.selected[0]
    assert pinned.id == reference.id
    assert pinned.checksum == calculate_checksum(pinned.content)
    assert pinned.checksum != reference.checksum
    assert pinned.token_count <= 4000
    assert pinned.metadata.extraction_method == "test.truncated"
    assert result.used_tokens <= 4000


def test_pinned_context_is_dropped_when_little_budget_remains() -> None:
    first = _context("first", context_type=ContextType.REFERENCE, tokens=3500)
    second = _context("second", document_id="doc-b", context_type=ContextType.TEXT_SELECTION, tokens=800)

    result = select_within_budget([first, second], [], 4000)

    assert result.selected == [first]
    assert result.dropped == [second]


def test_truncate_context_keeps_identity() -> None:
    context = _context("sentence. " * 1000)
    truncated = truncate_context(context, 100)

    assert truncated.id == context.id
    assert truncated.token_count <= 100
    assert truncated.checksum == calculate_checksum(truncated.content)
    assert context.token_count > 100


def test_dedup_results_keeps_best_copy() -> None:
    results = [
        SearchResult("same text", 0.4, "doc-a", ChunkLocation((1,), 0, 9)),
        SearchResult("same text", 0.9, "doc-b", ChunkLocation((1,), 0, 9)),
        SearchResult("overlapping", 0.5, "doc-a", ChunkLocation((1,), 5, 20)),
        SearchResult("elsewhere", 0.3, "doc-a", ChunkLocation((2,), 40, 60)),
        SearchResult("already sent", 0.99, "doc-c"),
    ]

    unique = dedup_results(results, exclude_checksums=[calculate_checksum("already sent")])

    assert [(result.text, result.document_id) for result in unique] == [
        ("same text", "doc-b"),
        ("overlapping", "doc-a"),
        ("elsewhere", "doc-a"),
    ]


def test_dedup_contexts_keeps_first_of_each_checksum() -> None:
    first = _context("alpha")
    contexts = [first, _context("alpha", document_id="doc-b"), _context("beta")]

    assert [context.id for context in dedup_contexts(contexts)] == [first.id, contexts[2].id]


def test_optimize_for_budget_preserves_input_order() -> None:
    contexts = [
        _context("c1", score=0.1, tokens=100),
        _context("sel", document_id="doc-b", context_type=ContextType.TEXT_SELECTION, tokens=100),
        _context("c2", score=0.9, tokens=100),
        _context("c3", score=0.5, tokens=900),
    ]

    chosen = optimize_for_budget(contexts, 300)

    assert [context.content for context in chosen] == ["c1", "sel", "c2"]
