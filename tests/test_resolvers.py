"""Tests for reference resolution and page hint parsing."""
from __future__ import annotations

from docchat.documents import DocumentLibrary
from docchat.models import Attachment, Rect
from docchat.resolvers import (
    extract_page_hints,
    reference_placeholder,
    resolve_references,
    selection_from_attachment,
    validate_document_references,
)


def _library() -> DocumentLibrary:
    library = DocumentLibrary()
    library.add_text("Annual Report", ["a"], document_id="11111111aaaa")
    library.add_text("Annual Report 2024", ["b"], document_id="22222222bbbb")
    library.add_text("Notes.pdf", ["c"], document_id="33333333cccc")
    return library


def test_resolve_references_prefers_longest_title() -> None:
    resolved = resolve_references("Compare @Annual Report 2024 with @annual report please", _library())

    assert resolved.processed_text == "Compare [REF:22222222] with [REF:11111111] please"
    assert [document.id for document in resolved.documents] == ["22222222bbbb", "11111111aaaa"]
    assert resolved.unresolved == []


def test_resolve_references_accepts_pdf_suffix_and_dedups() -> None:
    resolved = resolve_references("See @Annual Report.pdf and again @Annual Report, also @Notes.pdf", _library())

    assert resolved.processed_text == "See [REF:11111111] and again [REF:11111111], also [REF:33333333]"
    assert [document.title for document in resolved.documents] == ["Annual Report", "Notes.pdf"]


def test_resolve_references_reports_unknown_mentions_and_ignores_emails() -> None:
    text = "Mail me at someone@example.com about @Unknown"
    resolved = resolve_references(text, _library())

    assert resolved.processed_text == text
    assert resolved.documents == []
    assert resolved.unresolved == ["Unknown"]
    assert validate_document_references(text, _library()) == ["Unknown"]


def test_resolve_references_requires_word_boundary() -> None:
    resolved = resolve_references("@Annual Reports are out", _library())

    assert resolved.documents == []
    assert resolved.unresolved == ["Annual"]


def test_reference_placeholder_uses_id_prefix() -> None:
    assert reference_placeholder("abcdef0123456789") == "[REF:abcdef01]"


def test_extract_page_hints_parses_ranges_and_lists() -> None:
    assert extract_page_hints("What does page 3 say?") == [3]
    assert extract_page_hints("Summarise pages 3-4") == [3, 4]
    assert extract_page_hints("Look at pages 1, 5 and 7 then p. 9") == [1, 5, 7, 9]
    assert extract_page_hints("See pp. 10 to 12") == [10, 11, 12]
    assert extract_page_hints("No pages mentioned here") == []
    assert extract_page_hints("page 0 is not real") == []


def test_extract_page_hints_ignores_unbounded_ranges() -> None:
    assert extract_page_hints("pages 1-100000") == []


def test_selection_from_attachment_copies_fields() -> None:
    attachment = Attachment(
        document_id="doc",
        text="quoted",
        page_numbers=[2],
        selection_bounds=[Rect(0, 0, 1, 1)],
        character_range=(3, 9),
    )
    selection = selection_from_attachment(attachment)

    assert selection.page_numbers == (2,)
    assert selection.text == "quoted"
    assert selection.bounds == (Rect(0, 0, 1, 1),)
    assert selection.character_range == (3, 9)
