from __future__ import annotations

import os
from typing import Iterator

from .formats import is_image
from .reader import ArchiveEntry, ArchiveReader, RawMember


class FolderReader(ArchiveReader):
    """A directory of images treated as one comic.

    Only regular files at the top level are pages; symlinks are ignored so
    a folder cannot pull in files from elsewhere. Pages are copied into the
    reader temp dir like any other extraction, which keeps the cache free to
    delete what it holds.
    """

    format_name = "folder"

    @classmethod
    def can_open(cls, path: str) -> bool:
        return os.path.isdir(path)

    @classmethod
    def matches(cls, head: bytes) -> bool:
        return False

    def _iter_members(self) -> Iterator[RawMember]:
        with os.scandir(self.path) as it:
            for de in it:
                if de.is_symlink() or not de.is_file(follow_symlinks=False):
                    continue
                yield RawMember(path=de.name, size=de.stat(follow_symlinks=False).st_size)

    def _open_member(self, entry: ArchiveEntry):
        return open(os.path.join(self.path, entry.path), "rb")


class ImageReader(ArchiveReader):
    """A single image file presented as a one-page archive."""

    format_name = "image"
    magic_window = 12
    filter_extensions = False

    @classmethod
    def matches(cls, head: bytes) -> bool:
        return is_image(head)

    def _iter_members(self) -> Iterator[RawMember]:
        yield RawMember(path=os.path.basename(self.path), size=os.path.getsize(self.path))

    def _open_member(self, entry: ArchiveEntry):
        return open(self.path, "rb")
