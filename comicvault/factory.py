from __future__ import annotations

import logging
import os
from typing import List, Optional, Type

from .config import ArchiveLimits
from .epub import EpubReader
from .errors import UnsupportedFormat
from .folder import FolderReader, ImageReader
from .formats import FormatKind, detect, read_head
from .pdf import PdfReader
from .rarreader import RarArchiveReader
from .reader import ArchiveReader
from .sevenzip import SevenZipArchiveReader
from .zipreader import ZipArchiveReader

logger = logging.getLogger(__name__)


# Probe order; the first reader whose can_open() accepts the path wins
READERS: List[Type[ArchiveReader]] = [
    FolderReader,
    EpubReader,
    ZipArchiveReader,
    RarArchiveReader,
    SevenZipArchiveReader,
    PdfReader,
    ImageReader,
]


def reader_class_for(path: str) -> Optional[Type[ArchiveReader]]:
    for cls in READERS:
        if cls.can_open(path):
            return cls
    return None


def open_reader(path: str, limits: Optional[ArchiveLimits] = None, temp_dir: Optional[str] = None) -> ArchiveReader:
    """Construct the reader matching the file's signature.

    The file name and extension are never consulted.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    cls = reader_class_for(path)
    if cls is None:
        kind = detect(read_head(path))
        logger.info("No reader for %s (detected %s)", path, kind.value)
        raise UnsupportedFormat(kind.value if kind is not FormatKind.UNKNOWN else "unrecognized file signature")
    logger.debug("Opening %s with %s", path, cls.__name__)
    return cls(path, limits=limits, temp_dir=temp_dir)
