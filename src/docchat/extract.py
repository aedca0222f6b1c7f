"""Utilities for extracting per-page text from supported document types."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from pdfminer.high_level import extract_text as pdf_extract_text
from pdfminer.pdfpage import PDFPage

from docchat.errors import ExtractionError

LOGGER = logging.getLogger(__name__)

PAGE_BREAK = "\f"


def extract_pages(path: Path) -> List[str]:
    """Return the text of each page of ``path``.

    Plain text files are split on form feeds; PDFs are read page by page with
    pdfminer. Unreadable files raise :class:`ExtractionError`.
    """

    suffix = path.suffix.lower()
    if not path.exists():
        raise ExtractionError(f"Document not found: {path}")
    if suffix in {".txt", ".md"}:
        return _read_text_pages(path)
    if suffix == ".pdf":
        return _extract_pdf_pages(path)
    raise ExtractionError(f"Unsupported file type for extraction: {path.suffix or path.name}")


def _read_text_pages(path: Path) -> List[str]:
    for encoding in ("utf-8", "utf-16", "latin-1"):
        try:
            text = path.read_text(encoding=encoding)
        except UnicodeDecodeError:
            continue
        except OSError as exc:
            raise ExtractionError(f"Failed to read {path.name}", cause=exc) from exc
        return text.split(PAGE_BREAK)
    raise ExtractionError(f"Unable to decode {path.name}")


def _extract_pdf_pages(path: Path) -> List[str]:
    try:
        with path.open("rb") as handle:
            page_count = sum(1 for _ in PDFPage.get_pages(handle))
        pages = [pdf_extract_text(str(path), page_numbers=[index]) for index in range(page_count)]
    except Exception as exc:
        LOGGER.exception("PDF extraction failed for %s", path)
        raise ExtractionError(f"Failed to extract text from {path.name}", cause=exc) from exc

    LOGGER.info("Extracted %d pages from %s", len(pages), path.name)
    return [page.strip() for page in pages]


__all__ = ["PAGE_BREAK", "extract_pages"]
