from __future__ import annotations

import contextlib
from typing import Iterator

import rarfile

from .errors import UnsupportedFormat
from .formats import is_rar
from .reader import ArchiveEntry, ArchiveReader, RawMember


class RarArchiveReader(ArchiveReader):
    """CBR / RAR archives (RAR4 and RAR5) via ``rarfile``.

    Compressed members are decoded by the external tool ``rarfile`` finds
    (unrar, unar, 7z or bsdtar); stored members are read directly.
    """

    format_name = "rar"
    magic_window = 8
    library_errors = ArchiveReader.library_errors + (rarfile.Error,)

    @classmethod
    def matches(cls, head: bytes) -> bool:
        return is_rar(head)

    def _iter_members(self) -> Iterator[RawMember]:
        with rarfile.RarFile(self.path) as rf:
            if rf.needs_password():
                raise UnsupportedFormat("password-protected RAR")
            for info in rf.infolist():
                yield RawMember(path=info.filename, size=info.file_size or 0, is_dir=info.is_dir())

    @contextlib.contextmanager
    def _open_member(self, entry: ArchiveEntry):
        with rarfile.RarFile(self.path) as rf:
            with rf.open(entry.path) as fh:
                yield fh
