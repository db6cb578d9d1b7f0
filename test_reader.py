from __future__ import annotations

import concurrent.futures as _fut
import io
import os
import struct
import tempfile
import unittest
import zipfile
from pathlib import Path
from typing import Dict, Iterator

from comicvault.cancel import CancelToken
from comicvault.config import ArchiveLimits
from comicvault.constants import JPEG_MAGIC, PNG_MAGIC, RAR5_MAGIC, SEVEN_ZIP_MAGIC
from comicvault.errors import (
    EntryTooLarge,
    ExtractionFailed,
    MaliciousPath,
    NoPages,
    OperationCancelled,
    TooManyEntries,
    UnsupportedFormat,
)
from comicvault.epub import EpubReader
from comicvault.factory import open_reader
from comicvault.folder import FolderReader, ImageReader
from comicvault.formats import FormatKind, detect, read_head
from comicvault.pathutil import natural_sort_key, norm_member_path
from comicvault.reader import ArchiveEntry, ArchiveReader, RawMember
from comicvault.zipreader import ZipArchiveReader


def _png(tag: bytes = b"", size: int = 64) -> bytes:
    body = PNG_MAGIC + tag
    return body + b"\x00" * max(0, size - len(body))


def _make_zip(path: Path, members: Dict[str, bytes]) -> Path:
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return path


_CONTAINER_XML = """<?xml version="1.0"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def _xhtml(src: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        '<html xmlns="http://www.w3.org/1999/xhtml"><body>&nbsp;'
        f'<div><img src="{src}" alt=""/></div></body></html>\n'
    )


def _make_epub(path: Path, manifest, spine, files: Dict[str, bytes]) -> Path:
    """``manifest`` holds (id, href, media type) triples relative to OEBPS/."""
    items = "\n".join(f'    <item id="{i}" href="{h}" media-type="{t}"/>' for i, h, t in manifest)
    refs = "\n".join(f'    <itemref idref="{i}"/>' for i in spine)
    opf = (
        '<?xml version="1.0"?>\n'
        '<package xmlns="http://www.idpf.org/2007/opf" version="3.0">\n'
        f"  <manifest>\n{items}\n  </manifest>\n"
        f"  <spine>\n{refs}\n  </spine>\n"
        "</package>\n"
    )
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr(zipfile.ZipInfo("mimetype"), "application/epub+zip")
        zf.writestr("META-INF/container.xml", _CONTAINER_XML)
        zf.writestr("OEBPS/content.opf", opf)
        for name, data in files.items():
            zf.writestr(f"OEBPS/{name}", data)
    return path


def _understate_zip_sizes(path: Path, declared: int) -> None:
    """Rewrite the uncompressed size in the local and central headers."""
    raw = bytearray(path.read_bytes())
    struct.pack_into("<I", raw, raw.index(b"PK\x03\x04") + 22, declared)
    struct.pack_into("<I", raw, raw.rindex(b"PK\x01\x02") + 24, declared)
    path.write_bytes(bytes(raw))


def _files_under(root: Path):
    return [os.path.join(d, f) for d, _dirs, files in os.walk(root) for f in files]


class _LyingReader(ArchiveReader):
    """Declares tiny members but streams far more data than declared."""

    def __init__(self, path, payload: bytes, **kwargs):
        super().__init__(path, **kwargs)
        self.payload = payload

    @classmethod
    def matches(cls, head: bytes) -> bool:
        return False

    def _iter_members(self) -> Iterator[RawMember]:
        yield RawMember(path="p1.png", size=100)

    def _open_member(self, entry: ArchiveEntry):
        return io.BytesIO(self.payload)


class FormatDetectionTests(unittest.TestCase):
    def test_detect_by_magic(self):
        self.assertEqual(FormatKind.ZIP, detect(b"PK\x03\x04rest"))
        self.assertEqual(FormatKind.RAR5, detect(RAR5_MAGIC))
        self.assertEqual(FormatKind.RAR, detect(b"Rar!\x1a\x07\x00"))
        self.assertEqual(FormatKind.SEVEN_ZIP, detect(SEVEN_ZIP_MAGIC + b"\x00\x04"))
        self.assertEqual(FormatKind.PDF, detect(b"%PDF-1.7"))
        self.assertEqual(FormatKind.IMAGE, detect(JPEG_MAGIC + b"\xe0"))
        self.assertEqual(FormatKind.IMAGE, detect(b"RIFF\x00\x00\x00\x00WEBPVP8 "))
        self.assertEqual(FormatKind.UNKNOWN, detect(b"hello world"))
        self.assertEqual(FormatKind.UNKNOWN, detect(b""))

    def test_extension_is_ignored(self):
        with tempfile.TemporaryDirectory() as tmp:
            disguised = _make_zip(Path(tmp) / "comic.cbr", {"p1.png": _png()})
            with open_reader(str(disguised)) as reader:
                self.assertIsInstance(reader, ZipArchiveReader)
            text = Path(tmp) / "notes.cbz"
            text.write_text("not an archive")
            with self.assertRaises(UnsupportedFormat):
                open_reader(str(text))
            self.assertEqual(b"", read_head(tmp))

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            open_reader("/nonexistent/comic.cbz")


class PathRuleTests(unittest.TestCase):
    def test_rejects_unsafe_paths(self):
        for bad in ("../evil.png", "a/../../evil.png", "/abs.png", "C:/win.png", "a\\b.png", "a\x00.png"):
            with self.assertRaises(MaliciousPath, msg=bad):
                norm_member_path(bad)

    def test_canonical_form(self):
        self.assertEqual("a/b.png", norm_member_path("./a//b.png"))

    def test_natural_order(self):
        names = ["page10.png", "page2.png", "Page1.png", "page1.png"]
        self.assertEqual(["Page1.png", "page1.png", "page2.png", "page10.png"], sorted(names, key=natural_sort_key))

    def test_natural_order_with_non_decimal_digits(self):
        names = ["page1.png", "1²2.png", "page¹.png"]
        self.assertEqual(["1²2.png", "page1.png", "page¹.png"], sorted(names, key=natural_sort_key))
        with tempfile.TemporaryDirectory() as tmp:
            archive = _make_zip(Path(tmp) / "c.cbz", {n: _png() for n in names})
            with ZipArchiveReader(str(archive)) as reader:
                self.assertEqual(3, reader.page_count())


class ArchiveReaderTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_listing_is_dense_and_natural(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(
                tmp_path / "c.cbz",
                {"page10.png": _png(b"10"), "page2.png": _png(b"2"), "page1.png": _png(b"1")},
            )
            with ZipArchiveReader(str(archive)) as reader:
                entries = reader.list_entries()
                self.assertEqual(["page1.png", "page2.png", "page10.png"], [e.path for e in entries])
                self.assertEqual([0, 1, 2], [e.index for e in entries])
                self.assertEqual(3, reader.page_count())
                self.assertEqual(len({e.id for e in entries}), 3)
                self.assertEqual(entries, reader.list_entries())

        self.run_with_tmpdir(scenario)

    def test_unsorted_input_is_reordered(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(tmp_path / "x.cbz", {"c.png": _png(b"c"), "a.png": _png(b"a"), "b.png": _png(b"b")})
            with ZipArchiveReader(str(archive)) as reader:
                self.assertEqual(["a.png", "b.png", "c.png"], [e.file_name for e in reader.list_entries()])

        self.run_with_tmpdir(scenario)

    def test_metadata_and_non_images_are_dropped(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(
                tmp_path / "x.cbz",
                {
                    "__MACOSX/._p1.png": b"junk",
                    ".hidden.png": _png(),
                    "ComicInfo.xml": b"<ComicInfo/>",
                    "chapter1/p1.PNG": _png(b"1"),
                    "chapter1/": b"",
                },
            )
            with ZipArchiveReader(str(archive)) as reader:
                self.assertEqual(["chapter1/p1.PNG"], [e.path for e in reader.list_entries()])

        self.run_with_tmpdir(scenario)

    def test_traversal_rejected_before_extraction(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(tmp_path / "evil.cbz", {"p1.png": _png(), "../evil.png": _png()})
            temp_parent = tmp_path / "work"
            with ZipArchiveReader(str(archive), temp_dir=str(temp_parent)) as reader:
                with self.assertRaises(MaliciousPath):
                    reader.list_entries()
                self.assertIsNone(reader.temp_dir)
            self.assertFalse(temp_parent.exists() and _files_under(temp_parent))
            self.assertFalse((tmp_path.parent / "evil.png").exists())

        self.run_with_tmpdir(scenario)

    def test_declared_size_ceiling(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(tmp_path / "big.cbz", {"p1.png": _png(size=2000)})
            limits = ArchiveLimits(max_entry_size=1000)
            with ZipArchiveReader(str(archive), limits=limits) as reader:
                with self.assertRaises(EntryTooLarge):
                    reader.list_entries()

        self.run_with_tmpdir(scenario)

    def test_total_size_ceiling(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(tmp_path / "t.cbz", {"p1.png": _png(size=900), "p2.png": _png(size=900)})
            limits = ArchiveLimits(max_entry_size=1000, max_total_size=1500)
            with ZipArchiveReader(str(archive), limits=limits) as reader:
                with self.assertRaises(EntryTooLarge):
                    reader.list_entries()

        self.run_with_tmpdir(scenario)

    def test_entry_count_ceiling(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(tmp_path / "n.cbz", {f"p{i}.png": _png() for i in range(4)})
            with ZipArchiveReader(str(archive), limits=ArchiveLimits(max_entry_count=3)) as reader:
                with self.assertRaises(TooManyEntries):
                    reader.list_entries()

        self.run_with_tmpdir(scenario)

    def test_actual_bytes_are_bounded(self):
        def scenario(tmp_path: Path):
            work = tmp_path / "work"
            reader = _LyingReader(
                str(tmp_path / "lying"),
                b"\xff" * 50_000,
                limits=ArchiveLimits(max_entry_size=1000),
                temp_dir=str(work),
            )
            with reader:
                (entry,) = reader.list_entries()
                with self.assertRaises(EntryTooLarge) as ctx:
                    reader.extract_entry(entry)
                self.assertLessEqual(ctx.exception.size, 1000 + 64 * 1024)
                self.assertEqual([], _files_under(work))

        self.run_with_tmpdir(scenario)

    def test_zip_with_understated_size_is_bounded(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(tmp_path / "bomb.cbz", {"p1.png": _png(size=50_008)})
            _understate_zip_sizes(archive, 100)
            work = tmp_path / "work"
            limits = ArchiveLimits(max_entry_size=1000)
            with ZipArchiveReader(str(archive), limits=limits, temp_dir=str(work)) as reader:
                (entry,) = reader.list_entries()
                self.assertEqual(100, entry.uncompressed_size)
                with self.assertRaises(EntryTooLarge) as ctx:
                    reader.extract_entry(entry)
                self.assertGreater(ctx.exception.size, 1000)
                self.assertEqual([], _files_under(work))

        self.run_with_tmpdir(scenario)

    def test_honest_zip_member_passes_crc_check(self):
        def scenario(tmp_path: Path):
            payload = _png(b"honest", size=900)
            archive = _make_zip(tmp_path / "c.cbz", {"p1.png": payload})
            limits = ArchiveLimits(max_entry_size=1000)
            with ZipArchiveReader(str(archive), limits=limits) as reader:
                (entry,) = reader.list_entries()
                with open(reader.extract_entry(entry), "rb") as f:
                    self.assertEqual(payload, f.read())

        self.run_with_tmpdir(scenario)

    def test_no_pages(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(tmp_path / "empty.cbz", {"readme.txt": b"hi"})
            with ZipArchiveReader(str(archive)) as reader:
                with self.assertRaises(NoPages):
                    reader.list_entries()

        self.run_with_tmpdir(scenario)

    def test_extract_entries_concurrently(self):
        def scenario(tmp_path: Path):
            pages = {f"p{i}.JPG": JPEG_MAGIC + os.urandom(500) for i in range(6)}
            archive = _make_zip(tmp_path / "c.cbz", pages)
            with ZipArchiveReader(str(archive)) as reader:
                entries = reader.list_entries()
                with _fut.ThreadPoolExecutor(max_workers=4) as pool:
                    paths = list(pool.map(reader.extract_entry, entries))
                self.assertEqual(len(set(paths)), len(paths))
                for entry, path in zip(entries, paths):
                    self.assertTrue(path.endswith(".jpg"))
                    self.assertTrue(path.startswith(reader.temp_dir))
                    with open(path, "rb") as f:
                        self.assertEqual(pages[entry.path], f.read())
                temp_dir = reader.temp_dir
            self.assertFalse(os.path.exists(temp_dir))

        self.run_with_tmpdir(scenario)

    def test_foreign_entry_rejected(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(tmp_path / "c.cbz", {"p1.png": _png()})
            with ZipArchiveReader(str(archive)) as reader:
                forged = ArchiveEntry.create("p2.png", 10, 0)
                with self.assertRaises(ExtractionFailed):
                    reader.extract_entry(forged)

        self.run_with_tmpdir(scenario)

    def test_cancelled_extraction_leaves_nothing(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(tmp_path / "c.cbz", {"p1.png": _png(size=4096)})
            with ZipArchiveReader(str(archive)) as reader:
                (entry,) = reader.list_entries()
                token = CancelToken()
                token.cancel()
                with self.assertRaises(OperationCancelled):
                    reader.extract_entry(entry, cancel=token)
                self.assertTrue(reader.temp_dir is None or not os.listdir(reader.temp_dir))

        self.run_with_tmpdir(scenario)

    def test_extract_cover(self):
        def scenario(tmp_path: Path):
            archive = _make_zip(tmp_path / "c.cbz", {"b.png": _png(b"b"), "a.png": _png(b"a")})
            with ZipArchiveReader(str(archive)) as reader:
                with open(reader.extract_cover(), "rb") as f:
                    self.assertEqual(_png(b"a"), f.read())

        self.run_with_tmpdir(scenario)

    def test_folder_of_images(self):
        def scenario(tmp_path: Path):
            folder = tmp_path / "issue"
            folder.mkdir()
            (folder / "10.jpg").write_bytes(JPEG_MAGIC + b"10")
            (folder / "2.jpg").write_bytes(JPEG_MAGIC + b"2")
            (folder / "notes.txt").write_text("x")
            (folder / "sub").mkdir()
            (folder / "sub" / "1.jpg").write_bytes(JPEG_MAGIC)
            with open_reader(str(folder)) as reader:
                self.assertIsInstance(reader, FolderReader)
                entries = reader.list_entries()
                self.assertEqual(["2.jpg", "10.jpg"], [e.path for e in entries])
                copy = reader.extract_entry(entries[0])
                self.assertNotEqual(str(folder / "2.jpg"), copy)
            # The user's files are never touched
            self.assertTrue((folder / "2.jpg").exists())

        self.run_with_tmpdir(scenario)

    def test_single_image(self):
        def scenario(tmp_path: Path):
            image = tmp_path / "poster.bin"
            image.write_bytes(_png(b"poster"))
            with open_reader(str(image)) as reader:
                self.assertIsInstance(reader, ImageReader)
                (entry,) = reader.list_entries()
                with open(reader.extract_entry(entry), "rb") as f:
                    self.assertEqual(_png(b"poster"), f.read())

        self.run_with_tmpdir(scenario)

    def test_seven_zip(self):
        import py7zr

        def scenario(tmp_path: Path):
            archive = tmp_path / "c.cb7"
            with py7zr.SevenZipFile(archive, "w") as sz:
                sz.writestr(_png(b"2", size=300), "p2.png")
                sz.writestr(_png(b"1", size=300), "p1.png")
                sz.writestr(b"meta", "info.txt")
            with open_reader(str(archive)) as reader:
                entries = reader.list_entries()
                self.assertEqual(["p1.png", "p2.png"], [e.path for e in entries])
                with open(reader.extract_entry(entries[1]), "rb") as f:
                    self.assertEqual(_png(b"2", size=300), f.read())

        self.run_with_tmpdir(scenario)

    def test_seven_zip_actual_size_bounded(self):
        import py7zr

        def scenario(tmp_path: Path):
            archive = tmp_path / "c.cb7"
            with py7zr.SevenZipFile(archive, "w") as sz:
                sz.writestr(_png(size=5000), "p1.png")
            reader = open_reader(str(archive), limits=ArchiveLimits(max_entry_size=6000))
            with reader:
                (entry,) = reader.list_entries()
                # Shrink the ceiling after listing so only the streamed byte count can catch it
                reader.limits = ArchiveLimits(max_entry_size=1000)
                forged = ArchiveEntry(entry.id, entry.path, entry.file_name, 10, entry.index)
                reader._by_id[entry.id] = forged
                with self.assertRaises(EntryTooLarge):
                    reader.extract_entry(forged)
                self.assertEqual([], os.listdir(reader.temp_dir))

        self.run_with_tmpdir(scenario)

    def test_pdf_pages(self):
        import fitz

        def scenario(tmp_path: Path):
            pdf = tmp_path / "doc.pdf"
            doc = fitz.open()
            for _ in range(3):
                doc.new_page(width=200, height=300)
            doc.save(str(pdf))
            doc.close()
            with open_reader(str(pdf)) as reader:
                entries = reader.list_entries()
                self.assertEqual(["page_1.png", "page_2.png", "page_3.png"], [e.path for e in entries])
                with open(reader.extract_entry(entries[2]), "rb") as f:
                    self.assertTrue(f.read().startswith(PNG_MAGIC))

        self.run_with_tmpdir(scenario)


class EpubReaderTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_pages_follow_spine_order(self):
        def scenario(tmp_path: Path):
            book = _make_epub(
                tmp_path / "book.epub",
                manifest=[
                    ("p1", "text/p1.xhtml", "application/xhtml+xml"),
                    ("beta", "images/beta.png", "image/png"),
                    ("p3", "text/p3.xhtml", "application/xhtml+xml"),
                    ("cover", "images/cover.png", "image/png"),
                ],
                spine=["p1", "beta", "p3"],
                files={
                    "text/p1.xhtml": _xhtml("../images/zeta.png").encode("utf-8"),
                    "text/p3.xhtml": _xhtml("../images/alpha%201.png#frag").encode("utf-8"),
                    "images/zeta.png": _png(b"zeta"),
                    "images/beta.png": _png(b"beta"),
                    "images/alpha 1.png": _png(b"alpha"),
                    "images/cover.png": _png(b"cover"),
                },
            )
            self.assertEqual(FormatKind.EPUB, detect(read_head(str(book))))
            with open_reader(str(book), temp_dir=str(tmp_path / "work")) as reader:
                self.assertIsInstance(reader, EpubReader)
                entries = reader.list_entries()
                self.assertEqual(
                    ["OEBPS/images/zeta.png", "OEBPS/images/beta.png", "OEBPS/images/alpha 1.png"],
                    [e.path for e in entries],
                )
                self.assertEqual([0, 1, 2], [e.index for e in entries])
                with open(reader.extract_entry(entries[0]), "rb") as f:
                    self.assertEqual(_png(b"zeta"), f.read())

        self.run_with_tmpdir(scenario)

    def test_text_only_spine_falls_back_to_name_order(self):
        def scenario(tmp_path: Path):
            book = _make_epub(
                tmp_path / "book.epub",
                manifest=[("ch1", "ch1.xhtml", "application/xhtml+xml")],
                spine=["ch1"],
                files={
                    "ch1.xhtml": b"<html><body><p>text</p></body></html>",
                    "img/p10.png": _png(b"10"),
                    "img/p2.png": _png(b"2"),
                },
            )
            with EpubReader(str(book)) as reader:
                self.assertEqual(["p2.png", "p10.png"], [e.file_name for e in reader.list_entries()])

        self.run_with_tmpdir(scenario)

    def test_spine_cannot_reach_outside_the_book(self):
        def scenario(tmp_path: Path):
            book = _make_epub(
                tmp_path / "book.epub",
                manifest=[("p1", "p1.xhtml", "application/xhtml+xml")],
                spine=["p1"],
                files={"p1.xhtml": _xhtml("../../../etc/passwd.png").encode("utf-8"), "a.png": _png()},
            )
            with EpubReader(str(book)) as reader:
                self.assertEqual(["OEBPS/a.png"], [e.path for e in reader.list_entries()])

        self.run_with_tmpdir(scenario)

    def test_missing_container_fails_listing(self):
        def scenario(tmp_path: Path):
            book = tmp_path / "broken.epub"
            with zipfile.ZipFile(book, "w") as zf:
                zf.writestr(zipfile.ZipInfo("mimetype"), "application/epub+zip")
                zf.writestr("a.png", _png())
            with open_reader(str(book)) as reader:
                with self.assertRaises(ExtractionFailed):
                    reader.list_entries()

        self.run_with_tmpdir(scenario)


if __name__ == "__main__":
    unittest.main()
