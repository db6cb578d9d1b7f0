from __future__ import annotations

import hashlib
import hmac
import os
import struct
from dataclasses import asdict, dataclass
from typing import BinaryIO, Optional

from argon2.low_level import Type as ArgonType, hash_secret_raw
from Cryptodome.Cipher import ChaCha20_Poly1305

from .cancel import CancelToken, check
from .constants import MAX_STREAM_CHUNK_SIZE, STREAM_CHUNK_SIZE
from .errors import DecryptionFailed


NONCE_SIZE = 24
TAG_SIZE = 16
KEY_SIZE = 32
SALT_SIZE = 32

# Argon2id defaults for vault keys
ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 256 * 1024  # 256 MiB
ARGON_PARALLELISM = 4

# Anything weaker than this is refused
MIN_TIME_COST = 1
MIN_MEMORY_COST_KIB = 8 * 1024
MIN_PARALLELISM = 1

# Framed stream layout:
#   header  = magic(4) | nonce prefix(16) | chunk size(u32 LE)
#   record  = flag(1) | sealed length(u32 LE) | ciphertext + tag
# flag is 1 on the last record only. Nonces are derived from the prefix,
# the record index and the flag, so records cannot be reordered, dropped
# or cut short without failing authentication.
STREAM_MAGIC = b"CVS\x01"
STREAM_PREFIX_SIZE = 16
_HEADER = struct.Struct("<4s16sI")
_RECORD = struct.Struct("<BI")
_INDEX = struct.Struct("<QB")


@dataclass(frozen=True)
class KdfParams:
    time_cost: int = ARGON_TIME_COST
    memory_cost_kib: int = ARGON_MEMORY_COST_KIB
    parallelism: int = ARGON_PARALLELISM

    def validate(self) -> "KdfParams":
        if (
            self.time_cost < MIN_TIME_COST
            or self.memory_cost_kib < MIN_MEMORY_COST_KIB
            or self.parallelism < MIN_PARALLELISM
        ):
            raise ValueError("Argon2 parameters are below the supported minimum")
        return self

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "KdfParams":
        return cls(
            time_cost=int(data["time_cost"]),
            memory_cost_kib=int(data["memory_cost_kib"]),
            parallelism=int(data["parallelism"]),
        ).validate()


class EncryptionService:
    """Key derivation and authenticated encryption for vault data.

    Keys are passed in on every call and never retained, so one instance
    can serve any number of vaults and threads.
    """

    def __init__(self, params: Optional[KdfParams] = None, chunk_size: int = STREAM_CHUNK_SIZE):
        self.params = (params or KdfParams()).validate()
        if not 0 < chunk_size <= MAX_STREAM_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be between 1 and {MAX_STREAM_CHUNK_SIZE}")
        self.chunk_size = chunk_size

    # keys
    def derive_key(self, password: str, salt: bytes, params: Optional[KdfParams] = None) -> bytes:
        params = (params or self.params).validate()
        return hash_secret_raw(
            password.encode("utf-8"),
            salt,
            time_cost=params.time_cost,
            memory_cost=params.memory_cost_kib,
            parallelism=params.parallelism,
            hash_len=KEY_SIZE,
            type=ArgonType.ID,
        )

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(SALT_SIZE)

    # one-shot
    def encrypt(self, plaintext: bytes, key: bytes, aad: bytes = b"") -> bytes:
        """Seal ``plaintext`` as ``nonce || ciphertext || tag``."""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + _seal(key, nonce, plaintext, aad)

    def decrypt(self, payload: bytes, key: bytes, aad: bytes = b"") -> bytes:
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionFailed("Encrypted payload too short")
        return _open(key, payload[:NONCE_SIZE], payload[NONCE_SIZE:], aad)

    # streams
    def encrypt_stream(
        self, src: BinaryIO, dst: BinaryIO, key: bytes, cancel: Optional[CancelToken] = None
    ) -> bytes:
        """Encrypt ``src`` into ``dst`` chunk by chunk.

        Returns the BLAKE2s digest of the plaintext that was read.
        """
        header = _HEADER.pack(STREAM_MAGIC, os.urandom(STREAM_PREFIX_SIZE), self.chunk_size)
        dst.write(header)
        digest = hashlib.blake2s(digest_size=32)
        index = 0
        current = src.read(self.chunk_size)
        while True:
            check(cancel)
            following = src.read(self.chunk_size) if current else b""
            final = not following
            digest.update(current)
            nonce, aad = _chunk_nonce(key, header, index, final)
            sealed = _seal(key, nonce, current, aad)
            dst.write(_RECORD.pack(1 if final else 0, len(sealed)))
            dst.write(sealed)
            if final:
                break
            current = following
            index += 1
        return digest.digest()

    def decrypt_stream(
        self, src: BinaryIO, dst: BinaryIO, key: bytes, cancel: Optional[CancelToken] = None
    ) -> bytes:
        """Inverse of ``encrypt_stream``; returns the plaintext BLAKE2s digest.

        Plaintext is written as each record verifies. Callers that must not
        expose partial output write to a temporary file and discard it when
        this raises.
        """
        header = _read_exact(src, _HEADER.size)
        magic, _prefix, chunk_size = _HEADER.unpack(header)
        if magic != STREAM_MAGIC:
            raise DecryptionFailed("Not an encrypted vault stream")
        # Checked before authentication; bounds the size of any single read
        if not 0 < chunk_size <= MAX_STREAM_CHUNK_SIZE:
            raise DecryptionFailed("Malformed stream header")
        digest = hashlib.blake2s(digest_size=32)
        index = 0
        while True:
            check(cancel)
            flag, length = _RECORD.unpack(_read_exact(src, _RECORD.size))
            if flag not in (0, 1) or length < TAG_SIZE or length > chunk_size + TAG_SIZE:
                raise DecryptionFailed("Malformed stream record")
            sealed = _read_exact(src, length)
            final = flag == 1
            nonce, aad = _chunk_nonce(key, header, index, final)
            plain = _open(key, nonce, sealed, aad)
            digest.update(plain)
            dst.write(plain)
            if final:
                break
            index += 1
        if src.read(1):
            raise DecryptionFailed("Trailing data after final record")
        return digest.digest()


def _seal(key: bytes, nonce: bytes, plaintext: bytes, aad: bytes) -> bytes:
    cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
    if aad:
        cipher.update(aad)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return ciphertext + tag


def _open(key: bytes, nonce: bytes, sealed: bytes, aad: bytes) -> bytes:
    if len(sealed) < TAG_SIZE:
        raise DecryptionFailed("Encrypted payload too short")
    cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
    if aad:
        cipher.update(aad)
    try:
        return cipher.decrypt_and_verify(sealed[:-TAG_SIZE], sealed[-TAG_SIZE:])
    except ValueError as exc:
        raise DecryptionFailed() from exc


def _chunk_nonce(key: bytes, header: bytes, index: int, final: bool):
    position = _INDEX.pack(index, 1 if final else 0)
    nonce = hmac.new(key, b"CV_CHUNK_NONCE" + header[4:20] + position, hashlib.sha512).digest()[:NONCE_SIZE]
    return nonce, header + position


def _read_exact(src: BinaryIO, size: int) -> bytes:
    buf = src.read(size)
    if len(buf) != size:
        raise DecryptionFailed("Encrypted stream is truncated")
    return buf
