from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
import threading
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterable, List, Optional

from .cancel import CancelToken, check
from .config import ArchiveLimits
from .constants import COPY_CHUNK_SIZE, EXTRACT_DIR_PREFIX
from .errors import (
    ComicVaultError,
    EntryTooLarge,
    ExtractionFailed,
    MaliciousPath,
    NoPages,
    TooManyEntries,
)
from .formats import read_head
from .hashutil import entry_id
from .pathutil import file_name, is_image_name, natural_sort_key, norm_member_path, should_skip

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveEntry:
    """Metadata for one page inside an archive. Holds no image data."""

    id: str
    path: str
    file_name: str
    uncompressed_size: int
    index: int

    @classmethod
    def create(cls, path: str, uncompressed_size: int, index: int) -> "ArchiveEntry":
        return cls(
            id=entry_id(path),
            path=path,
            file_name=file_name(path),
            uncompressed_size=uncompressed_size,
            index=index,
        )


@dataclass(frozen=True)
class RawMember:
    path: str
    size: int
    is_dir: bool = False


def copy_bounded(
    src: BinaryIO,
    dst: BinaryIO,
    *,
    limit: int,
    path: str,
    cancel: Optional[CancelToken] = None,
    chunk_size: int = COPY_CHUNK_SIZE,
) -> int:
    """Copy ``src`` to ``dst`` chunk by chunk, counting actual bytes.

    Raises ``EntryTooLarge`` as soon as the running total passes ``limit``,
    whatever the archive metadata claimed.
    """
    total = 0
    while True:
        check(cancel)
        buf = src.read(chunk_size)
        if not buf:
            break
        total += len(buf)
        if total > limit:
            raise EntryTooLarge(path, total, limit)
        dst.write(buf)
    return total


class ArchiveReader(ABC):
    """Streaming reader bound to a single archive for its whole lifetime.

    Subclasses describe members (``_iter_members``) and open one member as
    a binary stream (``_open_member``); validation, ordering and bounded
    extraction to temp files live here. Every ``extract_entry`` call opens
    its own handle on the archive, so calls for different entries may run
    concurrently.
    """

    format_name = "archive"
    magic_window = 8
    # Entries must carry an image extension to become pages
    filter_extensions = True
    # Library errors that mean "this archive could not be read"
    library_errors: tuple = (OSError, ValueError, RuntimeError, EOFError, zlib.error)

    def __init__(self, path: str, limits: Optional[ArchiveLimits] = None, temp_dir: Optional[str] = None):
        self.path = path
        self.limits = limits or ArchiveLimits()
        self._temp_parent = temp_dir
        self.temp_dir: Optional[str] = None
        self._entries: Optional[List[ArchiveEntry]] = None
        self._by_id: Dict[str, ArchiveEntry] = {}
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        return f"{type(self).__name__}({self.path!r})"

    # detection
    @classmethod
    def can_open(cls, path: str) -> bool:
        if os.path.isdir(path):
            return False
        return cls.matches(read_head(path, cls.magic_window))

    @classmethod
    @abstractmethod
    def matches(cls, head: bytes) -> bool:
        """True when ``head`` carries this format's signature."""

    # format hooks
    @abstractmethod
    def _iter_members(self) -> Iterable[RawMember]:
        """Yield directory-level metadata for every member. No decompression."""

    def _open_member(self, entry: ArchiveEntry) -> contextlib.AbstractContextManager:
        """Context manager yielding a readable binary stream for one member.

        Readers that cannot stream a member override ``_extract_to`` instead.
        """
        raise NotImplementedError(f"{type(self).__name__} does not stream members")

    def _extract_to(self, entry: ArchiveEntry, dst: BinaryIO, cancel: Optional[CancelToken]) -> int:
        with self._open_member(entry) as src:
            return copy_bounded(src, dst, limit=self.limits.max_entry_size, path=entry.path, cancel=cancel)

    # public API
    def list_entries(self) -> List[ArchiveEntry]:
        """Validated image entries in natural reading order.

        Computed once; later calls return the same list.
        """
        with self._lock:
            if self._entries is None:
                try:
                    entries = self._build_listing()
                except ComicVaultError:
                    raise
                except self.library_errors as exc:
                    raise ExtractionFailed(exc) from exc
                self._entries = entries
                self._by_id = {e.id: e for e in entries}
                logger.debug("Listed %d page(s) in %s", len(entries), self.path)
            return list(self._entries)

    def page_count(self) -> int:
        return len(self.list_entries())

    def extract_entry(self, entry: ArchiveEntry, cancel: Optional[CancelToken] = None) -> str:
        """Decompress exactly one entry to a new file in the reader temp dir.

        Returns the file path. A failed or cancelled extraction leaves no
        file behind.
        """
        self.list_entries()
        listed = self._by_id.get(entry.id)
        if listed is None or listed.path != entry.path:
            raise ExtractionFailed(LookupError("entry is not part of this archive"), path=entry.path)
        if entry.uncompressed_size > self.limits.max_entry_size:
            raise EntryTooLarge(entry.path, entry.uncompressed_size, self.limits.max_entry_size)
        check(cancel)
        directory = self._ensure_temp_dir()
        _, ext = os.path.splitext(entry.file_name)
        fd, part_path = tempfile.mkstemp(prefix=f"{entry.id}-", suffix=".part", dir=directory)
        try:
            with os.fdopen(fd, "wb") as dst:
                written = self._extract_to(entry, dst, cancel)
            final_path = part_path[: -len(".part")] + ext.lower()
            os.replace(part_path, final_path)
        except BaseException as exc:
            _remove_quietly(part_path)
            if isinstance(exc, EntryTooLarge):
                logger.warning("Aborted oversized entry %r in %s (%d bytes)", entry.path, self.path, exc.size)
            if isinstance(exc, ComicVaultError) or not isinstance(exc, self.library_errors):
                raise
            raise ExtractionFailed(exc, path=entry.path) from exc
        logger.debug("Extracted %r (%d bytes) from %s", entry.path, written, self.path)
        return final_path

    def extract_cover(self, cancel: Optional[CancelToken] = None) -> str:
        entries = self.list_entries()
        return self.extract_entry(entries[0], cancel=cancel)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self.temp_dir is not None:
                shutil.rmtree(self.temp_dir, ignore_errors=True)
                self.temp_dir = None

    # internals
    def _ensure_temp_dir(self) -> str:
        with self._lock:
            if self._closed:
                raise ExtractionFailed(RuntimeError("reader is closed"))
            if self.temp_dir is None:
                if self._temp_parent:
                    os.makedirs(self._temp_parent, exist_ok=True)
                self.temp_dir = tempfile.mkdtemp(prefix=EXTRACT_DIR_PREFIX, dir=self._temp_parent)
            return self.temp_dir

    def _build_listing(self) -> List[ArchiveEntry]:
        """
        Applies the admission rules to every raw member, in this order:
        1.  Path validation: traversal, absolute or otherwise unsafe paths fail
            the whole listing (a manipulated archive is not partially trusted).
        2.  Member count ceiling, checked while scanning.
        3.  Directory, metadata and non-image members are dropped.
        4.  Declared size ceiling per entry and for the archive total.
        """
        limits = self.limits
        file_count = 0
        total = 0
        kept: List[RawMember] = []
        seen = set()
        for member in self._iter_members():
            canonical = norm_member_path(member.path)
            if member.is_dir:
                continue
            if canonical in seen:
                raise MaliciousPath(member.path, "duplicate entry")
            seen.add(canonical)
            file_count += 1
            if file_count > limits.max_entry_count:
                logger.warning("Rejecting %s: more than %d entries", self.path, limits.max_entry_count)
                raise TooManyEntries(file_count, limits.max_entry_count)
            if should_skip(member.path):
                continue
            if self.filter_extensions and not is_image_name(member.path):
                continue
            if member.size > limits.max_entry_size:
                logger.warning("Rejecting %s: entry %r declares %d bytes", self.path, member.path, member.size)
                raise EntryTooLarge(member.path, member.size, limits.max_entry_size)
            total += member.size
            if total > limits.max_total_size:
                raise EntryTooLarge(self.path, total, limits.max_total_size)
            kept.append(member)
        kept = self._order_pages(kept)
        if not kept:
            raise NoPages()
        return [ArchiveEntry.create(m.path, m.size, i) for i, m in enumerate(kept)]

    def _order_pages(self, members: List[RawMember]) -> List[RawMember]:
        """Reading order of the admitted members. Natural name order by default."""
        return sorted(members, key=lambda m: natural_sort_key(m.path))


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass

