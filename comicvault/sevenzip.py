from __future__ import annotations

from typing import BinaryIO, Iterator, Optional

import py7zr
from py7zr.exceptions import ArchiveError as SevenZipError, PasswordRequired
from py7zr.io import Py7zIO, WriterFactory

from .cancel import CancelToken, check
from .errors import ComicVaultError, EntryTooLarge, ExtractionFailed, UnsupportedFormat
from .formats import is_seven_zip
from .reader import ArchiveEntry, ArchiveReader, RawMember


class _BoundedWriter(Py7zIO):
    """py7zr sink that streams into an open file and enforces the size ceiling."""

    def __init__(self, dst: BinaryIO, *, limit: int, path: str, cancel: Optional[CancelToken]):
        self._dst = dst
        self._limit = limit
        self._path = path
        self._cancel = cancel
        self.written = 0
        # py7zr may re-wrap exceptions raised from write(); the first
        # failure is kept here and re-raised by the reader.
        self.error: Optional[ComicVaultError] = None

    def write(self, s) -> int:
        if self.error is not None:
            raise self.error
        try:
            check(self._cancel)
            if self.written + len(s) > self._limit:
                raise EntryTooLarge(self._path, self.written + len(s), self._limit)
        except ComicVaultError as exc:
            self.error = exc
            raise
        self._dst.write(s)
        self.written += len(s)
        return len(s)

    def read(self, size: Optional[int] = None) -> bytes:
        return b""

    def seek(self, offset: int, whence: int = 0) -> int:
        return self.written

    def flush(self) -> None:
        self._dst.flush()

    def size(self) -> int:
        return self.written


class _DiscardWriter(Py7zIO):
    def write(self, s) -> int:
        return len(s)

    def read(self, size: Optional[int] = None) -> bytes:
        return b""

    def seek(self, offset: int, whence: int = 0) -> int:
        return 0

    def flush(self) -> None:
        pass

    def size(self) -> int:
        return 0


class _SingleTargetFactory(WriterFactory):
    def __init__(self, target: str, writer: _BoundedWriter):
        self._target = target
        self._writer = writer

    def create(self, filename: str) -> Py7zIO:
        if filename.replace("\\", "/") != self._target:
            # Other members of a solid block are decoded but not kept
            return _DiscardWriter()
        return self._writer


class SevenZipArchiveReader(ArchiveReader):
    """CB7 / 7z archives via ``py7zr``.

    py7zr has no per-member stream API, so members are decoded through a
    writer factory that receives the data chunk by chunk.
    """

    format_name = "7z"
    magic_window = 6
    library_errors = ArchiveReader.library_errors + (SevenZipError,)

    @classmethod
    def matches(cls, head: bytes) -> bool:
        return is_seven_zip(head)

    def _iter_members(self) -> Iterator[RawMember]:
        try:
            with py7zr.SevenZipFile(self.path, mode="r") as sz:
                if sz.needs_password():
                    raise UnsupportedFormat("password-protected 7z")
                for info in sz.list():
                    yield RawMember(path=info.filename, size=info.uncompressed or 0, is_dir=info.is_directory)
        except PasswordRequired as exc:
            raise UnsupportedFormat("password-protected 7z") from exc

    def _extract_to(self, entry: ArchiveEntry, dst: BinaryIO, cancel: Optional[CancelToken]) -> int:
        writer = _BoundedWriter(dst, limit=self.limits.max_entry_size, path=entry.path, cancel=cancel)
        try:
            with py7zr.SevenZipFile(self.path, mode="r") as sz:
                sz.extract(targets=[entry.path], factory=_SingleTargetFactory(entry.path, writer))
        except Exception:
            if writer.error is not None:
                raise writer.error
            raise
        if writer.error is not None:
            raise writer.error
        if writer.written == 0 and entry.uncompressed_size > 0:
            raise ExtractionFailed(LookupError("member not found in 7z stream"), path=entry.path)
        return writer.written
