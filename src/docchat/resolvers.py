"""Pure helpers that turn raw user input into document references and selections."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set, Tuple

from docchat.documents import Document, DocumentLookup
from docchat.models import Attachment, Selection

REFERENCE_PREFIX = "[REF:"
_PDF_SUFFIX = ".pdf"

# "page 2", "pages 3-4", "pages 1, 3 and 5", "p. 5", "pp. 2-3"
_PAGE_HINT_RE = re.compile(
    r"\b(?:pages?|pp?\.)\s*(\d+(?:\s*(?:-|–|to|,|and|&)\s*\d+)*)",
    re.IGNORECASE,
)
_PAGE_RANGE_RE = re.compile(r"(\d+)\s*(?:-|–|to)\s*(\d+)")
_NUMBER_RE = re.compile(r"\d+")
_MAX_PAGE_SPAN = 500


@dataclass(slots=True)
class ResolvedReferences:
    """Outcome of scanning user text for ``@Title`` mentions."""

    processed_text: str
    documents: List[Document] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)


def reference_placeholder(document_id: str) -> str:
    return f"{REFERENCE_PREFIX}{document_id[:8]}]"


def _match_title_at(text: str, start: int, titles: Sequence[str]) -> Optional[Tuple[str, int]]:
    """Return the longest title that appears at ``start`` and where it ends."""

    lowered = text.lower()
    for title in titles:
        candidate = title.lower()
        if not lowered.startswith(candidate, start):
            continue
        end = start + len(candidate)
        if not candidate.endswith(_PDF_SUFFIX) and lowered.startswith(_PDF_SUFFIX, end):
            end += len(_PDF_SUFFIX)
        if end < len(text) and (text[end].isalnum() or text[end] == "_"):
            continue
        return title, end
    return None


def resolve_references(text: str, library: DocumentLookup) -> ResolvedReferences:
    """Replace ``@Title`` mentions with ``[REF:<id prefix>]`` placeholders.

    Titles are matched case-insensitively, longest first, so that ``@Annual
    Report 2024`` wins over ``@Annual Report``. A trailing ``.pdf`` is accepted
    even when the stored title has no extension. Mentions that do not match
    a known title are left untouched and reported in ``unresolved``.
    """

    titles = sorted({title for title in library.titles() if title}, key=len, reverse=True)
    pieces: List[str] = []
    documents: List[Document] = []
    seen: Set[str] = set()
    unresolved: List[str] = []

    position = 0
    while True:
        at = text.find("@", position)
        if at < 0:
            pieces.append(text[position:])
            break
        pieces.append(text[position:at])
        if at > 0 and (text[at - 1].isalnum() or text[at - 1] == "_"):
            # e-mail addresses and similar
            pieces.append("@")
            position = at + 1
            continue

        match = _match_title_at(text, at + 1, titles)
        document = library.find_by_name(match[0]) if match else None
        if match is None or document is None:
            word = re.match(r"[\w.\-]+", text[at + 1 :])
            if word:
                unresolved.append(word.group(0))
            pieces.append("@")
            position = at + 1
            continue

        pieces.append(reference_placeholder(document.id))
        if document.id not in seen:
            seen.add(document.id)
            documents.append(document)
        position = match[1]

    return ResolvedReferences(processed_text="".join(pieces), documents=documents, unresolved=unresolved)


def validate_document_references(text: str, library: DocumentLookup) -> List[str]:
    """Return the mentions in ``text`` that do not name a known document."""

    return resolve_references(text, library).unresolved


def extract_page_hints(text: str) -> List[int]:
    """Return the sorted page numbers named in ``text`` ("page 2", "pp. 3-4")."""

    pages: Set[int] = set()
    for match in _PAGE_HINT_RE.finditer(text):
        fragment = match.group(1)
        for start, end in _PAGE_RANGE_RE.findall(fragment):
            low, high = sorted((int(start), int(end)))
            if high - low <= _MAX_PAGE_SPAN:
                pages.update(range(low, high + 1))
        remainder = _PAGE_RANGE_RE.sub(" ", fragment)
        pages.update(int(number) for number in _NUMBER_RE.findall(remainder))
    return sorted(page for page in pages if page > 0)


def selection_from_attachment(attachment: Attachment) -> Selection:
    return Selection(
        page_numbers=tuple(attachment.page_numbers or ()),
        text=attachment.text,
        bounds=tuple(attachment.selection_bounds or ()),
        character_range=attachment.character_range,
    )


__all__ = [
    "REFERENCE_PREFIX",
    "ResolvedReferences",
    "extract_page_hints",
    "reference_placeholder",
    "resolve_references",
    "selection_from_attachment",
    "validate_document_references",
]
