from __future__ import annotations

import logging
import posixpath
import xml.etree.ElementTree as ET
import zipfile
from html.parser import HTMLParser
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote, urldefrag

from .constants import EPUB_XML_MAX_SIZE
from .errors import EntryTooLarge, ExtractionFailed
from .formats import is_epub
from .pathutil import norm_member_path
from .reader import RawMember
from .zipreader import ZipArchiveReader

logger = logging.getLogger(__name__)

CONTAINER_PATH = "META-INF/container.xml"
# Spine documents that wrap page images
MARKUP_TYPES = frozenset({"application/xhtml+xml", "text/html", "application/xml", "image/svg+xml"})


def _local(tag) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def resolve_href(base_dir: str, href: str) -> Optional[str]:
    """Archive path of ``href`` relative to ``base_dir``; None when it leaves the book."""
    href = unquote(urldefrag(href)[0])
    if not href or "://" in href or href.startswith(("/", "data:")):
        return None
    joined = posixpath.normpath(posixpath.join(base_dir, href))
    if joined == ".." or joined.startswith("../"):
        return None
    return joined


class _ImageRefs(HTMLParser):
    """Collects ``<img src>`` and SVG ``<image href>`` in document order."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.refs: List[str] = []

    def handle_starttag(self, tag, attrs):
        values = dict(attrs)
        if tag == "img":
            ref = values.get("src")
        elif tag == "image":
            ref = values.get("href") or values.get("xlink:href")
        else:
            return
        if ref:
            self.refs.append(ref)


class EpubReader(ZipArchiveReader):
    """EPUB books, paged by the images their spine references.

    Fixed-layout comics list page images in the spine directly or wrap each
    one in an XHTML (or SVG) document. A book whose spine yields no image
    falls back to all of its images in natural name order. Every member
    still passes the same admission rules as a plain ZIP.
    """

    format_name = "epub"
    magic_window = 64
    library_errors = ZipArchiveReader.library_errors + (ET.ParseError,)

    @classmethod
    def matches(cls, head: bytes) -> bool:
        return is_epub(head)

    def _order_pages(self, members: List[RawMember]) -> List[RawMember]:
        by_path = {norm_member_path(m.path): m for m in members}
        ordered: List[RawMember] = []
        seen = set()
        for path in self.spine_images():
            member = by_path.get(path)
            if member is None or path in seen:
                continue
            seen.add(path)
            ordered.append(member)
        if not ordered:
            logger.debug("No spine images in %s, using name order", self.path)
            return super()._order_pages(members)
        return ordered

    def spine_images(self) -> List[str]:
        """Image paths referenced by the spine, in reading order (may repeat)."""
        with zipfile.ZipFile(self.path, "r") as zf:
            names = {norm_member_path(n): n for n in zf.namelist()}
            opf_path = self._package_path(zf, names)
            manifest, spine = self._read_package(zf, names, opf_path)
            images: List[str] = []
            for idref in spine:
                item = manifest.get(idref)
                if item is None:
                    continue
                href, media_type = item
                if media_type in MARKUP_TYPES:
                    images.extend(self._markup_images(zf, names, href))
                elif media_type.startswith("image/"):
                    images.append(href)
            return images

    # package documents
    def _package_path(self, zf: zipfile.ZipFile, names: Dict[str, str]) -> str:
        container = self._read_small(zf, names, CONTAINER_PATH)
        if container is None:
            raise ExtractionFailed(ValueError("EPUB has no META-INF/container.xml"))
        for el in ET.fromstring(container).iter():
            if _local(el.tag) == "rootfile" and el.get("full-path"):
                path = resolve_href("", el.get("full-path"))
                if path is not None:
                    return path
        raise ExtractionFailed(ValueError("EPUB container names no package document"))

    def _read_package(
        self, zf: zipfile.ZipFile, names: Dict[str, str], opf_path: str
    ) -> Tuple[Dict[str, Tuple[str, str]], List[str]]:
        opf = self._read_small(zf, names, opf_path)
        if opf is None:
            raise ExtractionFailed(ValueError(f"EPUB package document {opf_path!r} is missing"))
        base = posixpath.dirname(opf_path)
        manifest: Dict[str, Tuple[str, str]] = {}
        spine: List[str] = []
        for el in ET.fromstring(opf).iter():
            tag = _local(el.tag)
            if tag == "item" and el.get("id"):
                href = resolve_href(base, el.get("href", ""))
                if href is not None:
                    manifest[el.get("id")] = (href, el.get("media-type", "").strip().lower())
            elif tag == "itemref" and el.get("idref"):
                spine.append(el.get("idref"))
        return manifest, spine

    def _markup_images(self, zf: zipfile.ZipFile, names: Dict[str, str], doc_path: str) -> List[str]:
        data = self._read_small(zf, names, doc_path)
        if data is None:
            return []
        parser = _ImageRefs()
        parser.feed(data.decode("utf-8", errors="replace"))
        parser.close()
        base = posixpath.dirname(doc_path)
        return [p for p in (resolve_href(base, ref) for ref in parser.refs) if p is not None]

    @staticmethod
    def _read_small(zf: zipfile.ZipFile, names: Dict[str, str], path: str) -> Optional[bytes]:
        name = names.get(path)
        if name is None:
            return None
        size = zf.getinfo(name).file_size
        if size > EPUB_XML_MAX_SIZE:
            raise EntryTooLarge(path, size, EPUB_XML_MAX_SIZE)
        # zipfile never returns more than the declared size
        return zf.read(name)
