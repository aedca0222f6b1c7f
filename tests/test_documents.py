"""Tests for the document library and text extraction."""
from __future__ import annotations

import pytest

from docchat.documents import Document, DocumentLibrary, LibraryTextExtractor
from docchat.errors import ExtractionError
from docchat.extract import extract_pages


def test_find_by_name_prefers_exact_then_partial_match() -> None:
    library = DocumentLibrary()
    report = library.add_text("Report", ["r"])
    annual = library.add_text("Annual Report 2024", ["a"])

    assert library.find_by_name("Report") is report
    assert library.find_by_name("annual report") is annual
    assert library.find_by_name("   ") is None
    assert library.find_by_name("missing") is None
    assert {document.id for document in library.find_matching("report")} == {report.id, annual.id}
    assert sorted(library.titles()) == ["Annual Report 2024", "Report"]
    assert len(library) == 2

    library.remove(report.id)
    assert library.find_by_id(report.id) is None


def test_text_files_are_split_into_pages(tmp_path) -> None:
    path = tmp_path / "notes.txt"
    path.write_text("first page\fsecond page\fthird page", encoding="utf-8")

    assert extract_pages(path) == ["first page", "second page", "third page"]


def test_extract_pages_rejects_missing_and_unsupported_files(tmp_path) -> None:
    with pytest.raises(ExtractionError):
        extract_pages(tmp_path / "absent.pdf")

    unsupported = tmp_path / "image.png"
    unsupported.write_bytes(b"\x89PNG")
    with pytest.raises(ExtractionError):
        extract_pages(unsupported)


def test_library_extractor_loads_file_backed_documents_lazily(tmp_path) -> None:
    path = tmp_path / "manual.txt"
    path.write_text("Chapter one\fChapter two", encoding="utf-8")
    library = DocumentLibrary()
    document = library.add_file(path)
    extractor = LibraryTextExtractor()

    assert document.title == "manual.txt"
    assert document.pages is None
    assert extractor.extract_text(document) == "Chapter one\n\nChapter two"
    assert document.page_count == 2
    assert extractor.extract_pages(document, [2]) == {2: "Chapter two"}
    assert extractor.extract_text(document, max_length=7) == "Chapter"


def test_library_extractor_errors() -> None:
    extractor = LibraryTextExtractor()
    empty = Document(title="Empty")

    with pytest.raises(ExtractionError):
        extractor.extract_text(empty)
    with pytest.raises(ExtractionError):
        extractor.extract_pages(Document(title="One", pages=["only"]), [2])


def test_source_checksum_tracks_page_text() -> None:
    extractor = LibraryTextExtractor()
    document = Document(title="Doc", pages=["a", "b"])
    before = extractor.source_checksum(document)

    document.pages = ["a", "c"]

    assert extractor.source_checksum(document) != before


def test_file_backed_checksum_reads_bytes_without_extracting(tmp_path) -> None:
    path = tmp_path / "manual.txt"
    path.write_text("first\fsecond", encoding="utf-8")
    extractor = LibraryTextExtractor()
    document = Document(title="manual.txt", path=path)

    before = extractor.source_checksum(document)

    assert document.pages is None
    path.write_text("first\fchanged", encoding="utf-8")
    assert extractor.source_checksum(document) != before
    with pytest.raises(ExtractionError):
        extractor.source_checksum(Document(title="gone.txt", path=tmp_path / "gone.txt"))
