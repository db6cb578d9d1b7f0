from __future__ import annotations

import hashlib
import os


def blake2s_16(data: bytes) -> bytes:
    return hashlib.blake2s(data, digest_size=16).digest()


def blake2s_32(data: bytes) -> bytes:
    return hashlib.blake2s(data, digest_size=32).digest()


def entry_id(path: str) -> str:
    """Stable, filesystem-safe id for an archive member.

    Content-addressed by the member path only, so listing the same archive
    twice yields the same ids. Domain-separated from archive identities.
    """
    return blake2s_16(b"CV_ENTRY\x00" + path.encode("utf-8")).hex()


def archive_identity(path: str) -> str:
    """Identity of an archive on disk that survives restarts.

    Derived from the resolved real path, not from any in-memory object.
    """
    resolved = os.path.realpath(os.path.abspath(path))
    return blake2s_32(b"CV_ARCHIVE\x00" + os.fsencode(resolved)).hex()


def vault_item_identity(item_id: str) -> str:
    """Cache identity of a vault item, independent of its scratch path."""
    return blake2s_32(b"CV_VAULT\x00" + item_id.encode("utf-8")).hex()
