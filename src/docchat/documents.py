"""Document records, the in-process document library and text extraction."""
from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from docchat.errors import ExtractionError
from docchat.extract import extract_pages
from docchat.models import new_id, utcnow
from docchat.tokenizer import calculate_checksum

LOGGER = logging.getLogger(__name__)

_READ_BLOCK = 1024 * 1024


@dataclass(slots=True)
class Document:
    """A source document known to the library."""

    title: str
    pages: Optional[List[str]] = None
    path: Optional[Path] = None
    id: str = field(default_factory=new_id)
    date_added: datetime = field(default_factory=utcnow)

    @property
    def page_count(self) -> int:
        return len(self.pages or [])


class DocumentLookup(Protocol):
    """Lookup contract used by reference resolution and the pipeline."""

    def find_by_id(self, document_id: str) -> Optional[Document]:
        ...

    def find_by_name(self, name: str) -> Optional[Document]:
        ...

    def titles(self) -> List[str]:
        ...


class TextExtractor(Protocol):
    """Extraction contract used by the context management service."""

    def extract_text(self, document: Document, max_length: Optional[int] = None) -> str:
        ...

    def extract_pages(self, document: Document, page_numbers: Sequence[int]) -> Dict[int, str]:
        ...

    def source_checksum(self, document: Document) -> str:
        ...


class DocumentLibrary:
    """Thread-safe in-memory registry of documents."""

    def __init__(self, documents: Iterable[Document] = ()) -> None:
        self._documents: Dict[str, Document] = {}
        self._lock = threading.RLock()
        for document in documents:
            self.add(document)

    def add(self, document: Document) -> Document:
        with self._lock:
            self._documents[document.id] = document
        return document

    def add_text(self, title: str, pages: Sequence[str], *, document_id: Optional[str] = None) -> Document:
        document = Document(title=title, pages=list(pages))
        if document_id is not None:
            document.id = document_id
        return self.add(document)

    def add_file(self, path: Path, *, title: Optional[str] = None) -> Document:
        """Register a file; pages are extracted lazily on first use."""

        return self.add(Document(title=title or path.name, path=path))

    def remove(self, document_id: str) -> None:
        with self._lock:
            self._documents.pop(document_id, None)

    def find_by_id(self, document_id: str) -> Optional[Document]:
        with self._lock:
            return self._documents.get(document_id)

    def find_by_name(self, name: str) -> Optional[Document]:
        """Exact title match first, then a case-insensitive partial match."""

        clean = name.strip()
        if not clean:
            return None
        with self._lock:
            documents = list(self._documents.values())
        for document in documents:
            if document.title == clean:
                return document
        lowered = clean.lower()
        for document in documents:
            if lowered in document.title.lower():
                return document
        return None

    def find_matching(self, pattern: str) -> List[Document]:
        lowered = pattern.strip().lower()
        with self._lock:
            return [doc for doc in self._documents.values() if lowered in doc.title.lower()]

    def titles(self) -> List[str]:
        with self._lock:
            return [document.title for document in self._documents.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)


class LibraryTextExtractor:
    """Read page text held in memory, loading file-backed documents on demand."""

    def _pages(self, document: Document) -> List[str]:
        if document.pages is None:
            if document.path is None:
                raise ExtractionError(f"Document {document.title!r} has no content")
            document.pages = extract_pages(document.path)
        return document.pages

    def extract_text(self, document: Document, max_length: Optional[int] = None) -> str:
        text = "\n\n".join(page for page in self._pages(document) if page.strip())
        if max_length is not None and len(text) > max_length:
            LOGGER.debug("Truncating %s from %d to %d characters", document.title, len(text), max_length)
            text = text[:max_length]
        return text

    def extract_pages(self, document: Document, page_numbers: Sequence[int]) -> Dict[int, str]:
        pages = self._pages(document)
        extracted: Dict[int, str] = {}
        for number in page_numbers:
            if number < 1 or number > len(pages):
                raise ExtractionError(
                    f"Page {number} is out of range for {document.title!r} ({len(pages)} pages)"
                )
            extracted[number] = pages[number - 1]
        return extracted

    def source_checksum(self, document: Document) -> str:
        """Hash the file bytes of file-backed documents, the page text otherwise."""

        if document.path is not None:
            return file_checksum(document.path)
        return calculate_checksum("\f".join(self._pages(document)))


def file_checksum(path: Path) -> str:
    digest = hashlib.sha256()
    try:
        with path.open("rb") as handle:
            for block in iter(lambda: handle.read(_READ_BLOCK), b""):
                digest.update(block)
    except OSError as exc:
        raise ExtractionError(f"Failed to read {path.name}", cause=exc) from exc
    return digest.hexdigest()


__all__ = [
    "Document",
    "DocumentLibrary",
    "DocumentLookup",
    "LibraryTextExtractor",
    "TextExtractor",
    "file_checksum",
]
