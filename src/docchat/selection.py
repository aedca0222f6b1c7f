"""Candidate deduplication and budget-aware context selection."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Sequence, Set

from docchat.models import ContextType, DocumentContext, SearchResult
from docchat.tokenizer import calculate_checksum, estimate_token_count, truncate_to_token_limit

LOGGER = logging.getLogger(__name__)

DEFAULT_TOKEN_LIMIT = 4000
DIVERSITY_BONUS = 0.2
MIN_TRUNCATION_TOKENS = 1000
PINNED_TYPES = (ContextType.REFERENCE, ContextType.TEXT_SELECTION)


@dataclass(slots=True)
class SelectionResult:
    selected: List[DocumentContext] = field(default_factory=list)
    dropped: List[DocumentContext] = field(default_factory=list)
    used_tokens: int = 0

    @property
    def nothing_fit(self) -> bool:
        return not self.selected and bool(self.dropped)


def dedup_results(
    results: Iterable[SearchResult], *, exclude_checksums: Iterable[str] = ()
) -> List[SearchResult]:
    """Drop duplicate candidates, keeping the higher-scoring copy.

    Two results are duplicates when their text checksums are equal or when
    their character spans overlap inside the same document. Results whose
    checksum is in ``exclude_checksums`` are removed outright. The survivors
    are returned best first.
    """

    excluded = set(exclude_checksums)
    ranked = sorted(
        enumerate(results), key=lambda item: (-item[1].relevance_score, item[0])
    )
    kept: List[SearchResult] = []
    seen: Set[str] = set()
    for _, result in ranked:
        checksum = result.checksum
        if checksum in excluded or checksum in seen:
            continue
        if any(
            other.document_id == result.document_id and other.location.overlaps(result.location)
            for other in kept
        ):
            continue
        seen.add(checksum)
        kept.append(result)
    return kept


def dedup_contexts(contexts: Iterable[DocumentContext]) -> List[DocumentContext]:
    """Keep the first context for each checksum, preserving order."""

    seen: Set[str] = set()
    unique: List[DocumentContext] = []
    for context in contexts:
        if context.checksum in seen:
            continue
        seen.add(context.checksum)
        unique.append(context)
    return unique


def select_within_budget(
    pinned: Sequence[DocumentContext],
    candidates: Sequence[DocumentContext],
    token_limit: int = DEFAULT_TOKEN_LIMIT,
    *,
    diversity_bonus: float = DIVERSITY_BONUS,
) -> SelectionResult:
    """Fit ``pinned`` then ``candidates`` inside ``token_limit``.

    Pinned contexts are admitted in the order given while they fit; one that
    is too large is truncated when at least ``MIN_TRUNCATION_TOKENS`` remain,
    otherwise it is dropped. Candidates are then taken one at a time by
    ``relevance + bonus``, where the bonus applies while the candidate's
    document is not yet represented. A candidate that does not fit is skipped
    and selection continues with the next one.
    Selected candidates keep their input order after the pinned contexts.
    """

    result = SelectionResult()
    coverage: Set[str] = set()

    for context in pinned:
        remaining_tokens = token_limit - result.used_tokens
        if context.token_count > remaining_tokens and remaining_tokens >= MIN_TRUNCATION_TOKENS:
            context = truncate_context(context, remaining_tokens)
        if context.token_count <= remaining_tokens:
            result.selected.append(context)
            result.used_tokens += context.token_count
            coverage.add(context.document_id)
        else:
            result.dropped.append(context)

    remaining = list(range(len(candidates)))
    accepted: List[int] = []
    while remaining:
        best = max(
            remaining,
            key=lambda index: (
                _final_score(candidates[index], coverage, diversity_bonus),
                candidates[index].relevance_score or 0.0,
                -index,
            ),
        )
        remaining.remove(best)
        candidate = candidates[best]
        if result.used_tokens + candidate.token_count <= token_limit:
            accepted.append(best)
            result.used_tokens += candidate.token_count
            coverage.add(candidate.document_id)
        else:
            result.dropped.append(candidate)

    result.selected.extend(candidates[index] for index in sorted(accepted))
    LOGGER.debug(
        "Selected %d of %d contexts using %d/%d tokens",
        len(result.selected),
        len(pinned) + len(candidates),
        result.used_tokens,
        token_limit,
    )
    return result


def truncate_context(context: DocumentContext, token_limit: int) -> DocumentContext:
    """Return a copy of ``context`` cut down to ``token_limit`` tokens.

    The copy keeps the id of the original; its checksum hashes the shortened
    content.
    """

    content = truncate_to_token_limit(context.content, token_limit)
    metadata = replace(
        context.metadata,
        extraction_method=context.metadata.extraction_method + ".truncated",
        token_count=estimate_token_count(content),
        checksum=calculate_checksum(content),
    )
    return replace(context, content=content, metadata=metadata)


def _final_score(context: DocumentContext, coverage: Set[str], bonus: float) -> float:
    score = context.relevance_score or 0.0
    if context.document_id not in coverage:
        score += bonus
    return score


def optimize_for_budget(
    contexts: Sequence[DocumentContext],
    token_limit: int = DEFAULT_TOKEN_LIMIT,
    *,
    diversity_bonus: Optional[float] = None,
) -> List[DocumentContext]:
    """Return the subset of ``contexts`` that fits ``token_limit``, in input order."""

    pinned = [context for context in contexts if context.context_type in PINNED_TYPES]
    pinned.sort(key=lambda context: PINNED_TYPES.index(context.context_type))
    candidates = [context for context in contexts if context.context_type not in PINNED_TYPES]
    result = select_within_budget(
        pinned,
        candidates,
        token_limit,
        diversity_bonus=DIVERSITY_BONUS if diversity_bonus is None else diversity_bonus,
    )
    chosen = {context.id: context for context in result.selected}
    return [chosen[context.id] for context in contexts if context.id in chosen]


__all__ = [
    "DEFAULT_TOKEN_LIMIT",
    "DIVERSITY_BONUS",
    "MIN_TRUNCATION_TOKENS",
    "PINNED_TYPES",
    "SelectionResult",
    "dedup_contexts",
    "dedup_results",
    "optimize_for_budget",
    "select_within_budget",
    "truncate_context",
]
