from __future__ import annotations

import enum
import os

from .constants import (
    EPUB_MIMETYPE_MARKER,
    EPUB_MIMETYPE_OFFSET,
    FTYP_MARKER,
    GIF87_MAGIC,
    GIF89_MAGIC,
    HEAD_PROBE_SIZE,
    JPEG_MAGIC,
    PDF_MAGIC,
    PNG_MAGIC,
    RAR4_MAGIC,
    RAR5_MAGIC,
    RIFF_MAGIC,
    SEVEN_ZIP_MAGIC,
    TIFF_BE_MAGIC,
    TIFF_LE_MAGIC,
    WEBP_MARKER,
    ZIP_EMPTY_MAGIC,
    ZIP_MAGIC,
    ZIP_SPANNED_MAGIC,
)


class FormatKind(enum.Enum):
    EPUB = "epub"
    ZIP = "zip"
    RAR = "rar"
    RAR5 = "rar5"
    SEVEN_ZIP = "7z"
    PDF = "pdf"
    IMAGE = "image"
    UNKNOWN = "unknown"


def read_head(path: str, size: int = HEAD_PROBE_SIZE) -> bytes:
    """Return at most ``size`` leading bytes of ``path`` (b"" if unreadable)."""
    if os.path.isdir(path):
        return b""
    try:
        with open(path, "rb") as fh:
            return fh.read(size)
    except OSError:
        return b""


def is_zip(head: bytes) -> bool:
    return head.startswith((ZIP_MAGIC, ZIP_EMPTY_MAGIC, ZIP_SPANNED_MAGIC))


def is_epub(head: bytes) -> bool:
    end = EPUB_MIMETYPE_OFFSET + len(EPUB_MIMETYPE_MARKER)
    return head.startswith(ZIP_MAGIC) and head[EPUB_MIMETYPE_OFFSET:end] == EPUB_MIMETYPE_MARKER


def is_rar(head: bytes) -> bool:
    return head.startswith((RAR4_MAGIC, RAR5_MAGIC))


def is_seven_zip(head: bytes) -> bool:
    return head.startswith(SEVEN_ZIP_MAGIC)


def is_pdf(head: bytes) -> bool:
    return head.startswith(PDF_MAGIC)


def is_image(head: bytes) -> bool:
    if head.startswith((PNG_MAGIC, JPEG_MAGIC, GIF87_MAGIC, GIF89_MAGIC, TIFF_LE_MAGIC, TIFF_BE_MAGIC)):
        return True
    if len(head) >= 12 and head.startswith(RIFF_MAGIC) and head[8:12] == WEBP_MARKER:
        return True
    return len(head) >= 12 and head[4:8] == FTYP_MARKER


def detect(head: bytes) -> FormatKind:
    """Classify a file from its leading bytes.

    EPUB is checked before ZIP because every EPUB is also a ZIP.
    """
    if is_epub(head):
        return FormatKind.EPUB
    if is_zip(head):
        return FormatKind.ZIP
    if head.startswith(RAR5_MAGIC):
        return FormatKind.RAR5
    if head.startswith(RAR4_MAGIC):
        return FormatKind.RAR
    if is_seven_zip(head):
        return FormatKind.SEVEN_ZIP
    if is_pdf(head):
        return FormatKind.PDF
    if is_image(head):
        return FormatKind.IMAGE
    return FormatKind.UNKNOWN
