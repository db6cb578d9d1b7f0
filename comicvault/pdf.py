from __future__ import annotations

import io
import re
from typing import BinaryIO, Iterator, Optional

import pymupdf as fitz  # PyMuPDF

from .cancel import CancelToken, check
from .constants import PDF_MAX_DIMENSION, PDF_RENDER_SCALE
from .errors import ExtractionFailed, UnsupportedFormat
from .formats import is_pdf
from .reader import ArchiveEntry, ArchiveReader, RawMember, copy_bounded

_PAGE_NAME_RE = re.compile(r"^page_(\d+)\.png$")


def _render_zoom(width: float, height: float) -> float:
    longest = max(width, height)
    if longest <= 0:
        return PDF_RENDER_SCALE
    return min(PDF_RENDER_SCALE, PDF_MAX_DIMENSION / longest)


class PdfReader(ArchiveReader):
    """PDF documents as page images, rendered on demand with PyMuPDF.

    Each page becomes a virtual member ``page_<n>.png``; its declared size is
    the raw RGB pixel count of the render, so the size ceiling applies
    before any rendering happens.
    """

    format_name = "pdf"
    magic_window = 4

    @classmethod
    def matches(cls, head: bytes) -> bool:
        return is_pdf(head)

    def _iter_members(self) -> Iterator[RawMember]:
        with fitz.open(self.path) as doc:
            if doc.needs_pass:
                raise UnsupportedFormat("password-protected PDF")
            for number in range(doc.page_count):
                rect = doc[number].rect
                zoom = _render_zoom(rect.width, rect.height)
                estimated = int(rect.width * zoom) * int(rect.height * zoom) * 3
                yield RawMember(path=f"page_{number + 1}.png", size=estimated)

    def _extract_to(self, entry: ArchiveEntry, dst: BinaryIO, cancel: Optional[CancelToken]) -> int:
        m = _PAGE_NAME_RE.match(entry.path)
        if m is None:
            raise ExtractionFailed(LookupError("not a PDF page entry"), path=entry.path)
        number = int(m.group(1)) - 1
        check(cancel)
        with fitz.open(self.path) as doc:
            page = doc[number]
            zoom = _render_zoom(page.rect.width, page.rect.height)
            pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            data = pix.tobytes("png")
        return copy_bounded(io.BytesIO(data), dst, limit=self.limits.max_entry_size, path=entry.path, cancel=cancel)
