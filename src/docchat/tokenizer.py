"""Token estimation, checksums and token-aware text splitting.

Token counts are estimated as ``ceil(len(text) / 4)`` after collapsing runs of
whitespace into single spaces. For English prose this lands within roughly
25% of a BPE tokenizer; code and non-Latin scripts are under-counted. The
estimate is deterministic and monotonic in the collapsed length, which is all
the budget arithmetic relies on.
"""
from __future__ import annotations

import hashlib
import math
import re
from typing import Iterable, List

CHARACTERS_PER_TOKEN = 4
_WHITESPACE_RE = re.compile(r"\s+")


def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text)


def estimate_token_count(text: str) -> int:
    """Return the estimated number of model tokens in ``text``."""

    if not text:
        return 0
    return math.ceil(len(_collapse(text)) / CHARACTERS_PER_TOKEN)


def estimate_total_tokens(texts: Iterable[str]) -> int:
    return sum(estimate_token_count(text) for text in texts)


def calculate_checksum(text: str) -> str:
    """Content hash used for deduplication and cache staleness checks."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def truncate_to_token_limit(text: str, limit: int) -> str:
    """Trim ``text`` so that its estimate fits in ``limit`` tokens."""

    if limit <= 0:
        return ""
    if estimate_token_count(text) <= limit:
        return text

    # Leave 10% headroom since the estimate runs on collapsed whitespace.
    target = int(limit * CHARACTERS_PER_TOKEN * 0.9)
    if target <= 3:
        return text[: max(target, 0)]
    return text[: target - 3] + "..."


def split_into_chunks(text: str, max_tokens_per_chunk: int) -> List[str]:
    """Split ``text`` on paragraphs, then sentences, then hard character limits."""

    if max_tokens_per_chunk <= 0:
        raise ValueError("max_tokens_per_chunk must be positive")
    max_chars = max(int(max_tokens_per_chunk * CHARACTERS_PER_TOKEN * 0.9), 8)

    chunks: List[str] = []
    current = ""
    for paragraph in text.split("\n\n"):
        piece = paragraph + "\n\n"
        if len(current) + len(piece) <= max_chars:
            current += piece
            continue
        if current.strip():
            chunks.append(current.strip())
        if len(piece) > max_chars:
            chunks.extend(_split_long_text(piece, max_chars))
            current = ""
        else:
            current = piece

    if current.strip():
        chunks.append(current.strip())
    return [chunk for chunk in chunks if chunk.strip()]


def _split_long_text(text: str, max_chars: int) -> List[str]:
    chunks: List[str] = []
    current = ""
    sentences = text.split(". ")
    for index, sentence in enumerate(sentences):
        piece = sentence + (". " if index < len(sentences) - 1 else "")
        if len(current) + len(piece) <= max_chars:
            current += piece
            continue
        if current.strip():
            chunks.append(current.strip())
        if len(piece) > max_chars:
            chunks.extend(_hard_split(piece, max_chars))
            current = ""
        else:
            current = piece
    if current.strip():
        chunks.append(current.strip())
    return chunks


def _hard_split(text: str, max_chars: int) -> List[str]:
    return [text[start : start + max_chars] for start in range(0, len(text), max_chars)]


__all__ = [
    "CHARACTERS_PER_TOKEN",
    "calculate_checksum",
    "estimate_token_count",
    "estimate_total_tokens",
    "split_into_chunks",
    "truncate_to_token_limit",
]
