"""
comicvault: reading core for comic archives with an encrypted vault.

Features:

- One streaming reader per format (CBZ/ZIP, CBR/RAR4+5, CB7/7z, EPUB, PDF, image folders,
  single images), chosen by magic bytes, never by file name.
- Untrusted archives are validated before anything is decompressed: path traversal,
  entry count and declared size ceilings; actual bytes are counted while streaming.
- Pages extract one at a time to private temp files; a bounded LRU page cache with
  coalesced background prefetch keeps reading smooth.
- Vault: Argon2id-derived key, XChaCha20-Poly1305 chunked file encryption, encrypted
  manifest, verify-then-secure-delete of originals, scratch copies purged on lock.

See comicvault.session.ComicSession for the reading entry point and
comicvault.vault.Vault for the vault.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "errors",
    "factory",
    "reader",
    "cache",
    "session",
    "encryption",
    "vault",
]
