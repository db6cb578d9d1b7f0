from __future__ import annotations

import hashlib
import io
import os
import struct
import unittest

from comicvault.cancel import CancelToken
from comicvault.encryption import (
    ARGON_MEMORY_COST_KIB,
    ARGON_PARALLELISM,
    ARGON_TIME_COST,
    KEY_SIZE,
    NONCE_SIZE,
    SALT_SIZE,
    TAG_SIZE,
    EncryptionService,
    KdfParams,
)
from comicvault.constants import MAX_STREAM_CHUNK_SIZE
from comicvault.errors import DecryptionFailed, OperationCancelled

# Cheap Argon2 settings so the suite stays fast
FAST_KDF = KdfParams(time_cost=1, memory_cost_kib=8 * 1024, parallelism=1)


def _records(blob: bytes):
    """Split a framed stream into (header, [record bytes])."""
    header, pos, out = blob[:24], 24, []
    while pos < len(blob):
        _flag, length = struct.unpack("<BI", blob[pos:pos + 5])
        out.append(blob[pos:pos + 5 + length])
        pos += 5 + length
    return header, out


class EncryptionServiceTests(unittest.TestCase):
    def setUp(self):
        self.svc = EncryptionService(FAST_KDF, chunk_size=16)
        self.key = os.urandom(KEY_SIZE)

    def test_default_params(self):
        params = KdfParams()
        self.assertEqual(ARGON_TIME_COST, params.time_cost)
        self.assertEqual(ARGON_MEMORY_COST_KIB, params.memory_cost_kib)
        self.assertEqual(ARGON_PARALLELISM, params.parallelism)
        self.assertEqual(params, KdfParams.from_dict(params.to_dict()))

    def test_weak_params_rejected(self):
        with self.assertRaises(ValueError):
            KdfParams(time_cost=0).validate()
        with self.assertRaises(ValueError):
            EncryptionService(KdfParams(memory_cost_kib=1024))

    def test_derive_key(self):
        salt = self.svc.generate_salt()
        self.assertEqual(SALT_SIZE, len(salt))
        key = self.svc.derive_key("p1", salt)
        self.assertEqual(KEY_SIZE, len(key))
        self.assertEqual(key, self.svc.derive_key("p1", salt))
        self.assertNotEqual(key, self.svc.derive_key("p2", salt))
        self.assertNotEqual(key, self.svc.derive_key("p1", self.svc.generate_salt()))

    def test_roundtrip_including_empty(self):
        for plaintext in (b"", b"a", os.urandom(1000)):
            sealed = self.svc.encrypt(plaintext, self.key)
            self.assertEqual(NONCE_SIZE + len(plaintext) + TAG_SIZE, len(sealed))
            self.assertEqual(plaintext, self.svc.decrypt(sealed, self.key))
        self.assertNotEqual(self.svc.encrypt(b"same", self.key), self.svc.encrypt(b"same", self.key))

    def test_tampering_detected(self):
        sealed = bytearray(self.svc.encrypt(b"secret page", self.key))
        sealed[NONCE_SIZE + 2] ^= 0x01
        with self.assertRaises(DecryptionFailed):
            self.svc.decrypt(bytes(sealed), self.key)
        good = self.svc.encrypt(b"secret page", self.key, aad=b"ctx")
        with self.assertRaises(DecryptionFailed):
            self.svc.decrypt(good, self.key, aad=b"other")
        with self.assertRaises(DecryptionFailed):
            self.svc.decrypt(good, os.urandom(KEY_SIZE), aad=b"ctx")
        with self.assertRaises(DecryptionFailed):
            self.svc.decrypt(good[: NONCE_SIZE + TAG_SIZE - 1], self.key, aad=b"ctx")

    def test_stream_roundtrip(self):
        for size in (0, 5, 16, 33, 64):
            data = os.urandom(size)
            sealed = io.BytesIO()
            digest = self.svc.encrypt_stream(io.BytesIO(data), sealed, self.key)
            self.assertEqual(hashlib.blake2s(data, digest_size=32).digest(), digest)
            out = io.BytesIO()
            self.assertEqual(digest, self.svc.decrypt_stream(io.BytesIO(sealed.getvalue()), out, self.key))
            self.assertEqual(data, out.getvalue())

    def test_stream_truncation_reorder_and_trailing(self):
        sealed = io.BytesIO()
        self.svc.encrypt_stream(io.BytesIO(os.urandom(50)), sealed, self.key)
        blob = sealed.getvalue()
        header, records = _records(blob)
        self.assertEqual(4, len(records))

        def attempt(candidate: bytes):
            with self.assertRaises(DecryptionFailed):
                self.svc.decrypt_stream(io.BytesIO(candidate), io.BytesIO(), self.key)

        attempt(header + b"".join(records[:-1]))
        attempt(blob[:-3])
        attempt(header + records[1] + records[0] + b"".join(records[2:]))
        attempt(blob + b"\x00")
        attempt(b"XXXX" + blob[4:])
        with self.assertRaises(DecryptionFailed):
            self.svc.decrypt_stream(io.BytesIO(blob), io.BytesIO(), os.urandom(KEY_SIZE))

    def test_stream_cancellation(self):
        token = CancelToken()
        token.cancel()
        with self.assertRaises(OperationCancelled):
            self.svc.encrypt_stream(io.BytesIO(b"x" * 100), io.BytesIO(), self.key, token)

    def test_stream_header_chunk_size_is_bounded(self):
        reads = []

        class _RecordingStream(io.BytesIO):
            def read(self, size=-1):
                reads.append(size)
                return super().read(size)

        sealed = io.BytesIO()
        self.svc.encrypt_stream(io.BytesIO(os.urandom(20)), sealed, self.key)
        forged_header = sealed.getvalue()[:20] + struct.pack("<I", 0xFFFFFFFF)
        forged = forged_header + struct.pack("<BI", 0, 0x80000000) + b"\x00" * 64
        with self.assertRaises(DecryptionFailed):
            self.svc.decrypt_stream(_RecordingStream(forged), io.BytesIO(), self.key)
        self.assertLessEqual(max(reads), 24)
        with self.assertRaises(ValueError):
            EncryptionService(FAST_KDF, chunk_size=MAX_STREAM_CHUNK_SIZE + 1)


if __name__ == "__main__":
    unittest.main()
