from __future__ import annotations

import os
import posixpath
import re
import tempfile

from .constants import IGNORED_ROOTS, IMAGE_EXTENSIONS
from .errors import MaliciousPath

_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_DIGITS_RE = re.compile(r"(\d+)")


def norm_member_path(p: str) -> str:
    """Validate an archive member path and return its canonical form.

    Rules:
    - Reject NUL bytes, backslashes, absolute paths and drive letters
    - Reject '..' segments
    - Remove empty and '.' segments
    - The result must stay inside the archive root
    """
    if "\x00" in p:
        raise MaliciousPath(p, "NUL byte in path")
    if "\\" in p:
        raise MaliciousPath(p, "backslash in path")
    if p.startswith("/"):
        raise MaliciousPath(p, "absolute path")
    if _DRIVE_RE.match(p):
        raise MaliciousPath(p, "drive-qualified path")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise MaliciousPath(p, "directory traversal")
    canonical = "/".join(parts)
    resolved = posixpath.normpath(posixpath.join("/root", canonical))
    if canonical and not resolved.startswith("/root/"):
        raise MaliciousPath(p, "resolves outside archive root")
    return canonical


def should_skip(path: str) -> bool:
    """True for macOS resource forks and hidden files."""
    parts = path.split("/")
    if parts and parts[0] in IGNORED_ROOTS:
        return True
    return any(part.startswith(".") for part in parts)


def is_image_name(path: str) -> bool:
    _, ext = posixpath.splitext(path)
    return ext[1:].lower() in IMAGE_EXTENSIONS


def file_name(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def natural_key(s: str):
    """Sort key that orders digit runs numerically: page_2 before page_10."""
    return [(0, int(t), t) if t.isdecimal() else (1, 0, t.casefold()) for t in _DIGITS_RE.split(s)]


def natural_sort_key(path: str):
    # Raw path breaks ties between names differing only in case or zero padding
    return (natural_key(path), path)


def atomic_write(path: str, data: bytes) -> None:
    """Write ``data`` to ``path`` via a synced temp file and ``os.replace``."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.remove(tmp)
        except FileNotFoundError:
            pass
        raise
