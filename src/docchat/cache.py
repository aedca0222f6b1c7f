"""TTL-bounded cache of extracted document contexts.

Entries are keyed by ``(document_id, context_type)``. A bounded in-memory map
sits in front of an optional directory holding one JSON file per key. Reads
run concurrently; writes are last-writer-wins per key.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
from collections import OrderedDict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from docchat.errors import CacheCorruptionError
from docchat.models import ContextType, DocumentContext, utcnow
from docchat.telemetry import emit_cache_event

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(days=7)
DEFAULT_MAX_MEMORY_ENTRIES = 100
DEFAULT_MAX_DISK_BYTES = 100 * 1024 * 1024
_UNSAFE_CHARS = re.compile(r"[^\w.\-]")


def cache_key(document_id: str, context_type: ContextType) -> str:
    return f"{document_id}-{context_type.value}"


def cache_file_name(key: str) -> str:
    """File name for ``key``; keys that need escaping get a hash suffix so they stay distinct."""

    safe = _UNSAFE_CHARS.sub("_", key)
    if safe != key:
        safe = f"{safe}-{hashlib.sha256(key.encode('utf-8')).hexdigest()[:16]}"
    return f"{safe}.json"


class ContextCache:
    """Shared cache used by every session's context service."""

    def __init__(
        self,
        directory: str | Path | None = None,
        *,
        max_age: timedelta = DEFAULT_MAX_AGE,
        max_memory_entries: int = DEFAULT_MAX_MEMORY_ENTRIES,
        max_disk_bytes: int = DEFAULT_MAX_DISK_BYTES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.directory = Path(directory) if directory is not None else None
        if self.directory is not None:
            self.directory.mkdir(parents=True, exist_ok=True)
        self.max_age = max_age
        self.max_memory_entries = max_memory_entries
        self.max_disk_bytes = max_disk_bytes
        self._clock = clock
        self._memory: "OrderedDict[str, DocumentContext]" = OrderedDict()

    def is_expired(self, context: DocumentContext) -> bool:
        return self._clock() - context.extracted_at >= self.max_age

    def _path_for(self, key: str) -> Path:
        assert self.directory is not None
        return self.directory / cache_file_name(key)

    async def get(self, document_id: str, context_type: ContextType) -> Optional[DocumentContext]:
        """Return a live entry or ``None``. Expired and corrupt entries are dropped."""

        key = cache_key(document_id, context_type)
        context = self._memory.get(key)
        if context is None and self.directory is not None:
            try:
                context = await asyncio.to_thread(self._read_file, key)
            except CacheCorruptionError as exc:
                LOGGER.warning("Discarding corrupt cache entry %s: %s", key, exc)
                emit_cache_event("cache.corrupt", key=key, error=exc)
                await asyncio.to_thread(self._delete_file, key)
                return None
            if context is not None and (
                context.document_id != document_id or context.context_type is not context_type
            ):
                LOGGER.warning("Cache file for %s holds %s; ignoring it", key, context.document_id)
                emit_cache_event("cache.mismatch", key=key, reason=context.document_id)
                context = None
            elif context is not None:
                self._remember(key, context)

        if context is None:
            emit_cache_event("cache.miss", key=key)
            return None
        if self.is_expired(context):
            emit_cache_event("cache.expired", key=key)
            await self._drop(key)
            return None
        emit_cache_event("cache.hit", key=key)
        return context

    async def put(self, context: DocumentContext) -> None:
        key = cache_key(context.document_id, context.context_type)
        self._remember(key, context)
        if self.directory is not None:
            await asyncio.to_thread(self._write_file, key, context)
            await self.cleanup()

    async def invalidate(self, document_id: str) -> None:
        for context_type in ContextType:
            await self._drop(cache_key(document_id, context_type))

    async def clear(self) -> None:
        self._memory.clear()
        if self.directory is not None:
            await asyncio.to_thread(self._delete_all_files)

    async def cleanup(self) -> int:
        """Remove expired files, then the oldest ones until under the size cap."""

        if self.directory is None:
            return 0
        return await asyncio.to_thread(self._cleanup_files)

    def __len__(self) -> int:
        return len(self._memory)

    def _remember(self, key: str, context: DocumentContext) -> None:
        self._memory[key] = context
        self._memory.move_to_end(key)
        while len(self._memory) > self.max_memory_entries:
            evicted, _ = self._memory.popitem(last=False)
            LOGGER.debug("Evicted %s from in-memory context cache", evicted)

    async def _drop(self, key: str) -> None:
        self._memory.pop(key, None)
        if self.directory is not None:
            await asyncio.to_thread(self._delete_file, key)

    def _read_file(self, key: str) -> Optional[DocumentContext]:
        path = self._path_for(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise CacheCorruptionError(f"Unreadable cache file {path.name}", cause=exc) from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CacheCorruptionError(f"Invalid JSON in cache file {path.name}", cause=exc) from exc
        if not isinstance(payload, dict):
            raise CacheCorruptionError(f"Unexpected payload in cache file {path.name}")
        return DocumentContext.from_dict(payload)

    def _write_file(self, key: str, context: DocumentContext) -> None:
        path = self._path_for(key)
        handle, temp_name = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                json.dump(context.to_dict(), stream, ensure_ascii=False)
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def _delete_file(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def _delete_all_files(self) -> None:
        assert self.directory is not None
        for path in self.directory.glob("*.json"):
            path.unlink(missing_ok=True)

    def _cleanup_files(self) -> int:
        assert self.directory is not None
        files: List[Tuple[float, int, Path]] = []
        for path in self.directory.glob("*.json"):
            try:
                stats = path.stat()
            except FileNotFoundError:
                continue
            files.append((stats.st_mtime, stats.st_size, path))

        removed = 0
        cutoff = (self._clock() - self.max_age).timestamp()
        remaining: List[Tuple[float, int, Path]] = []
        for mtime, size, path in files:
            if mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
            else:
                remaining.append((mtime, size, path))

        total = sum(size for _, size, _ in remaining)
        for _, size, path in sorted(remaining):
            if total <= self.max_disk_bytes:
                break
            path.unlink(missing_ok=True)
            total -= size
            removed += 1

        if removed:
            LOGGER.info("Removed %d cached context files from %s", removed, self.directory)
        return removed


__all__ = [
    "ContextCache",
    "DEFAULT_MAX_AGE",
    "DEFAULT_MAX_DISK_BYTES",
    "DEFAULT_MAX_MEMORY_ENTRIES",
    "cache_file_name",
    "cache_key",
]
