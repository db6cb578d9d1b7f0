from __future__ import annotations

import contextlib
import enum
import hmac
import json
import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Dict, Iterator, List, Optional

from .cancel import CancelToken
from .constants import (
    COPY_CHUNK_SIZE,
    DEFAULT_SCRATCH_LIFETIME,
    SCRATCH_DIR_PREFIX,
    VAULT_BLOB_SUFFIX,
    VAULT_CONFIG_NAME,
    VAULT_FILES_DIR,
    VAULT_FORMAT_VERSION,
    VAULT_MANIFEST_NAME,
)
from .encryption import EncryptionService, KdfParams
from .errors import (
    BiometricNotAvailable,
    DecryptionFailed,
    FileAlreadyInVault,
    FileNotInVault,
    IncorrectPassword,
    VaultAlreadySetUp,
    VaultCorrupted,
    VaultLocked,
    VaultNotSetUp,
)
from .formats import FormatKind, detect, read_head
from .keywrap import KeyWrapper
from .pathutil import atomic_write

logger = logging.getLogger(__name__)

_MANIFEST_AAD = b"CV_MANIFEST\x00v1"


class VaultState(enum.Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


@dataclass(frozen=True)
class VaultItem:
    id: str
    original_name: str
    original_path: str
    encrypted_file_name: str
    added_at: float
    file_size: int
    file_type: str
    digest: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "VaultItem":
        return cls(
            id=str(data["id"]),
            original_name=str(data["original_name"]),
            original_path=str(data["original_path"]),
            encrypted_file_name=str(data["encrypted_file_name"]),
            added_at=float(data["added_at"]),
            file_size=int(data["file_size"]),
            file_type=str(data["file_type"]),
            digest=str(data["digest"]),
        )


@dataclass
class _VaultConfig:
    salt: bytes
    kdf: KdfParams
    biometric_enabled: bool = False
    wrapped_key: Optional[bytes] = None

    def to_json(self) -> bytes:
        doc = {
            "version": VAULT_FORMAT_VERSION,
            "salt": self.salt.hex(),
            "kdf": self.kdf.to_dict(),
            "biometric_enabled": self.biometric_enabled,
            "wrapped_key": self.wrapped_key.hex() if self.wrapped_key else None,
        }
        return (json.dumps(doc, indent=2, sort_keys=True) + "\n").encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "_VaultConfig":
        try:
            doc = json.loads(raw.decode("utf-8"))
            if doc.get("version") != VAULT_FORMAT_VERSION:
                raise VaultCorrupted(f"Unsupported vault version: {doc.get('version')!r}")
            wrapped = doc.get("wrapped_key")
            return cls(
                salt=bytes.fromhex(doc["salt"]),
                kdf=KdfParams.from_dict(doc["kdf"]),
                biometric_enabled=bool(doc.get("biometric_enabled", False)),
                wrapped_key=bytes.fromhex(wrapped) if wrapped else None,
            )
        except VaultCorrupted:
            raise
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise VaultCorrupted("Vault configuration is unreadable") from exc


class _Discard:
    def write(self, data: bytes) -> int:
        return len(data)


class Vault:
    """Password-protected store of encrypted comic files.

    Layout under ``root``::

        vault.json              salt, KDF parameters, biometric state
        manifest.encrypted      encrypted JSON list of VaultItem
        files/<id>.enc          one framed ciphertext per item

    The vault key lives in memory only while unlocked. All operations are
    serialized on one lock, so ``lock()`` waits for an add or remove in
    progress to finish (or be cancelled) rather than racing it.
    """

    def __init__(
        self,
        root: str,
        encryption: Optional[EncryptionService] = None,
        key_wrapper: Optional[KeyWrapper] = None,
        scratch_lifetime: float = DEFAULT_SCRATCH_LIFETIME,
        temp_dir: Optional[str] = None,
    ):
        self.root = os.path.abspath(root)
        self.encryption = encryption or EncryptionService()
        self.key_wrapper = key_wrapper
        self.scratch_lifetime = scratch_lifetime
        self._temp_parent = temp_dir
        self._scratch_dir: Optional[str] = None
        self._scratch: Dict[str, float] = {}
        self._key: Optional[bytes] = None
        self._manifest: Optional[List[VaultItem]] = None
        self._lock = threading.RLock()

    def __repr__(self):
        return f"Vault({self.root!r}, state={self.state.value})"

    # paths
    @property
    def config_path(self) -> str:
        return os.path.join(self.root, VAULT_CONFIG_NAME)

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.root, VAULT_MANIFEST_NAME)

    @property
    def files_dir(self) -> str:
        return os.path.join(self.root, VAULT_FILES_DIR)

    def blob_path(self, item: VaultItem) -> str:
        return os.path.join(self.files_dir, item.encrypted_file_name)

    # state
    @property
    def is_set_up(self) -> bool:
        return os.path.isfile(self.config_path)

    @property
    def is_unlocked(self) -> bool:
        with self._lock:
            return self._key is not None

    @property
    def state(self) -> VaultState:
        return VaultState.UNLOCKED if self.is_unlocked else VaultState.LOCKED

    def is_biometric_enabled(self) -> bool:
        if not self.is_set_up:
            return False
        cfg = self._read_config()
        return cfg.biometric_enabled and cfg.wrapped_key is not None

    # lifecycle
    def setup_vault(self, password: str, enable_biometric: bool = False) -> None:
        with self._lock:
            if self.is_set_up:
                raise VaultAlreadySetUp()
            if not password:
                raise ValueError("password must not be empty")
            salt = self.encryption.generate_salt()
            params = self.encryption.params
            key = self.encryption.derive_key(password, salt, params)
            cfg = _VaultConfig(salt=salt, kdf=params)
            if enable_biometric:
                cfg.biometric_enabled = True
                cfg.wrapped_key = self._require_wrapper().wrap(key)
            os.makedirs(self.files_dir, exist_ok=True)
            self._write_manifest([], key)
            # vault.json last: its presence marks a complete setup
            atomic_write(self.config_path, cfg.to_json())
            self._key = key
            self._manifest = []
            logger.info("Vault created at %s", self.root)

    def unlock(self, password: str) -> None:
        with self._lock:
            if not self.is_set_up:
                # Throwaway KDF run keeps timing equal to a real attempt
                self.encryption.derive_key(password, self.encryption.generate_salt())
                raise VaultNotSetUp()
            cfg = self._read_config()
            key = self.encryption.derive_key(password, cfg.salt, cfg.kdf)
            manifest = self._load_manifest(key, wrong_key=IncorrectPassword)
            self._key = key
            self._manifest = manifest
            logger.info("Vault unlocked (%d item(s))", len(manifest))

    def unlock_with_biometric(self, reason: str = "Unlock your comic vault") -> None:
        with self._lock:
            if not self.is_set_up:
                raise VaultNotSetUp()
            cfg = self._read_config()
            if not cfg.biometric_enabled or cfg.wrapped_key is None:
                raise BiometricNotAvailable()
            key = self._require_wrapper().unwrap(cfg.wrapped_key, reason)
            manifest = self._load_manifest(key, wrong_key=VaultCorrupted)
            self._key = key
            self._manifest = manifest
            logger.info("Vault unlocked with biometrics (%d item(s))", len(manifest))

    def lock(self) -> None:
        with self._lock:
            self._key = None
            self._manifest = None
            self.purge_scratch(everything=True)
        logger.info("Vault locked")

    # items
    def list_files(self) -> List[VaultItem]:
        with self._lock:
            self._require_unlocked()
            return list(self._manifest)

    def add_file(self, path: str, cancel: Optional[CancelToken] = None) -> VaultItem:
        """Encrypt ``path`` into the vault, then securely delete the original.

        The original is only touched after the ciphertext has been decrypted
        again and its digest matched, and the manifest saved.
        """
        with self._lock:
            key = self._require_unlocked()
            name = os.path.basename(path)
            if any(item.original_name == name for item in self._manifest):
                raise FileAlreadyInVault()
            if not os.path.isfile(path):
                raise FileNotFoundError(path)
            item_id = uuid.uuid4().hex
            blob_name = item_id + VAULT_BLOB_SUFFIX
            blob = os.path.join(self.files_dir, blob_name)
            os.makedirs(self.files_dir, exist_ok=True)
            part = blob + ".part"
            try:
                with open(path, "rb") as src, open(part, "wb") as dst:
                    digest = self.encryption.encrypt_stream(src, dst, key, cancel)
                    dst.flush()
                    os.fsync(dst.fileno())
                with open(part, "rb") as src:
                    check_digest = self.encryption.decrypt_stream(src, _Discard(), key, cancel)
                if not hmac.compare_digest(digest, check_digest):
                    raise DecryptionFailed("Encrypted copy did not verify")
                os.replace(part, blob)
            except BaseException:
                _remove_quietly(part)
                raise
            kind = detect(read_head(path))
            item = VaultItem(
                id=item_id,
                original_name=name,
                original_path=os.path.abspath(path),
                encrypted_file_name=blob_name,
                added_at=time.time(),
                file_size=os.path.getsize(blob),
                file_type=kind.value if kind is not FormatKind.UNKNOWN else os.path.splitext(name)[1].lstrip(".").lower(),
                digest=digest.hex(),
            )
            manifest = self._manifest + [item]
            try:
                self._write_manifest(manifest, key)
            except BaseException:
                _remove_quietly(blob)
                raise
            self._manifest = manifest
            logger.info("Added %s to vault as %s", name, item_id)
        secure_delete(path)
        return item

    def remove_file(
        self, item: VaultItem, destination: Optional[str] = None, cancel: Optional[CancelToken] = None
    ) -> str:
        """Decrypt ``item`` back out of the vault and drop it from the manifest.

        ``destination`` may be a directory or a file path; it defaults to
        the path the file was added from. Existing files are not replaced.
        """
        with self._lock:
            key = self._require_unlocked()
            stored = self._find(item)
            target = destination or stored.original_path
            if os.path.isdir(target):
                target = os.path.join(target, stored.original_name)
            if os.path.exists(target):
                raise FileExistsError(target)
            directory = os.path.dirname(os.path.abspath(target))
            os.makedirs(directory, exist_ok=True)
            fd, part = tempfile.mkstemp(prefix=".restore-", suffix=".part", dir=directory)
            try:
                with os.fdopen(fd, "wb") as dst:
                    self._decrypt_blob(stored, dst, key, cancel)
                os.replace(part, target)
            except BaseException:
                _remove_quietly(part)
                raise
            manifest = [i for i in self._manifest if i.id != stored.id]
            self._write_manifest(manifest, key)
            self._manifest = manifest
            _remove_quietly(self.blob_path(stored))
            logger.info("Removed %s from vault", stored.original_name)
            return target

    def decrypt_file(self, item: VaultItem, cancel: Optional[CancelToken] = None) -> str:
        """Decrypt ``item`` to a scratch copy and return its path.

        Scratch copies are deleted once older than ``scratch_lifetime`` and
        all of them on ``lock()``.
        """
        with self._lock:
            key = self._require_unlocked()
            stored = self._find(item)
            self.purge_scratch()
            fd, out = tempfile.mkstemp(prefix=f"{stored.id}-", suffix=f"-{stored.original_name}", dir=self._ensure_scratch())
            try:
                with os.fdopen(fd, "wb") as dst:
                    self._decrypt_blob(stored, dst, key, cancel)
            except BaseException:
                _remove_quietly(out)
                raise
            self._scratch[out] = time.monotonic()
            logger.debug("Decrypted %s to scratch", stored.original_name)
            return out

    @contextlib.contextmanager
    def open_item(self, item: VaultItem, cancel: Optional[CancelToken] = None) -> Iterator[str]:
        path = self.decrypt_file(item, cancel)
        try:
            yield path
        finally:
            with self._lock:
                self._scratch.pop(path, None)
            _remove_quietly(path)

    def purge_scratch(self, everything: bool = False) -> int:
        """Delete scratch copies past their lifetime (or all of them)."""
        with self._lock:
            now = time.monotonic()
            expired = [p for p, t in self._scratch.items() if everything or now - t >= self.scratch_lifetime]
            for p in expired:
                del self._scratch[p]
                _remove_quietly(p)
            if everything and self._scratch_dir is not None:
                shutil.rmtree(self._scratch_dir, ignore_errors=True)
                self._scratch_dir = None
            if expired:
                logger.debug("Purged %d scratch file(s)", len(expired))
            return len(expired)

    # settings
    def set_biometric_enabled(self, enabled: bool, password: str) -> None:
        with self._lock:
            if not self.is_set_up:
                raise VaultNotSetUp()
            cfg = self._read_config()
            key = self.encryption.derive_key(password, cfg.salt, cfg.kdf)
            self._load_manifest(key, wrong_key=IncorrectPassword)
            if enabled:
                cfg.wrapped_key = self._require_wrapper().wrap(key)
                cfg.biometric_enabled = True
            else:
                cfg.wrapped_key = None
                cfg.biometric_enabled = False
                if self.key_wrapper is not None:
                    self.key_wrapper.forget()
            atomic_write(self.config_path, cfg.to_json())
            logger.info("Biometric unlock %s", "enabled" if enabled else "disabled")

    def change_password(self, current: str, new: str, cancel: Optional[CancelToken] = None) -> None:
        """Re-encrypt every item under a key derived from ``new``.

        New ciphertexts are written and verified next to the old ones first;
        nothing is replaced until all of them succeeded.
        """
        if not new:
            raise ValueError("password must not be empty")
        with self._lock:
            if not self.is_set_up:
                raise VaultNotSetUp()
            cfg = self._read_config()
            old_key = self.encryption.derive_key(current, cfg.salt, cfg.kdf)
            manifest = self._load_manifest(old_key, wrong_key=IncorrectPassword)
            salt = self.encryption.generate_salt()
            params = self.encryption.params
            new_key = self.encryption.derive_key(new, salt, params)
            staged: List[str] = []
            try:
                for item in manifest:
                    staged.append(self._reencrypt(item, old_key, new_key, cancel))
            except BaseException:
                for part in staged:
                    _remove_quietly(part)
                raise
            for item, part in zip(manifest, staged):
                os.replace(part, self.blob_path(item))
            self._write_manifest(manifest, new_key)
            new_cfg = _VaultConfig(salt=salt, kdf=params, biometric_enabled=cfg.biometric_enabled)
            if cfg.biometric_enabled and self.key_wrapper is not None and self.key_wrapper.is_available():
                new_cfg.wrapped_key = self.key_wrapper.wrap(new_key)
            else:
                new_cfg.biometric_enabled = False
            atomic_write(self.config_path, new_cfg.to_json())
            if self._key is not None:
                self._key = new_key
                self._manifest = manifest
            logger.info("Vault password changed (%d item(s) re-encrypted)", len(manifest))

    def delete_vault(self, password: str) -> None:
        """Destroy the vault and everything in it. Requires the password."""
        with self._lock:
            if not self.is_set_up:
                raise VaultNotSetUp()
            cfg = self._read_config()
            key = self.encryption.derive_key(password, cfg.salt, cfg.kdf)
            self._load_manifest(key, wrong_key=IncorrectPassword)
            self.lock()
            shutil.rmtree(self.root)
            if self.key_wrapper is not None:
                self.key_wrapper.forget()
        logger.info("Vault at %s deleted", self.root)

    # internals
    def _require_unlocked(self) -> bytes:
        if self._key is None:
            raise VaultLocked()
        return self._key

    def _require_wrapper(self) -> KeyWrapper:
        if self.key_wrapper is None or not self.key_wrapper.is_available():
            raise BiometricNotAvailable()
        return self.key_wrapper

    def _find(self, item: VaultItem) -> VaultItem:
        for stored in self._manifest:
            if stored.id == item.id:
                return stored
        raise FileNotInVault()

    def _read_config(self) -> _VaultConfig:
        try:
            with open(self.config_path, "rb") as f:
                raw = f.read()
        except FileNotFoundError:
            raise VaultNotSetUp() from None
        return _VaultConfig.from_json(raw)

    def _write_manifest(self, items: List[VaultItem], key: bytes) -> None:
        doc = json.dumps([i.to_dict() for i in items], sort_keys=True).encode("utf-8")
        atomic_write(self.manifest_path, self.encryption.encrypt(doc, key, aad=_MANIFEST_AAD))

    def _load_manifest(self, key: bytes, *, wrong_key) -> List[VaultItem]:
        try:
            with open(self.manifest_path, "rb") as f:
                payload = f.read()
        except FileNotFoundError:
            raise VaultCorrupted("Vault manifest is missing") from None
        try:
            doc = self.encryption.decrypt(payload, key, aad=_MANIFEST_AAD)
        except DecryptionFailed as exc:
            raise wrong_key() from exc
        try:
            return [VaultItem.from_dict(d) for d in json.loads(doc.decode("utf-8"))]
        except (ValueError, KeyError, TypeError) as exc:
            raise VaultCorrupted("Vault manifest is unreadable") from exc

    def _decrypt_blob(self, item: VaultItem, dst, key: bytes, cancel: Optional[CancelToken]) -> None:
        try:
            src = open(self.blob_path(item), "rb")
        except FileNotFoundError:
            raise VaultCorrupted("Encrypted file is missing") from None
        with src:
            digest = self.encryption.decrypt_stream(src, dst, key, cancel)
        if not hmac.compare_digest(digest.hex(), item.digest):
            raise DecryptionFailed("Decrypted file does not match its recorded digest")

    def _reencrypt(self, item: VaultItem, old_key: bytes, new_key: bytes, cancel: Optional[CancelToken]) -> str:
        part = self.blob_path(item) + ".rekey.part"
        fd, plain = tempfile.mkstemp(prefix=f"{item.id}-", dir=self._ensure_scratch())
        try:
            with os.fdopen(fd, "w+b") as tmp:
                self._decrypt_blob(item, tmp, old_key, cancel)
                tmp.seek(0)
                with open(part, "wb") as dst:
                    digest = self.encryption.encrypt_stream(tmp, dst, new_key, cancel)
                    dst.flush()
                    os.fsync(dst.fileno())
            if digest.hex() != item.digest:
                raise DecryptionFailed("Re-encrypted file did not verify")
        except BaseException:
            _remove_quietly(part)
            raise
        finally:
            _remove_quietly(plain)
        return part

    def _ensure_scratch(self) -> str:
        if self._scratch_dir is None or not os.path.isdir(self._scratch_dir):
            if self._temp_parent:
                os.makedirs(self._temp_parent, exist_ok=True)
            self._scratch_dir = tempfile.mkdtemp(prefix=SCRATCH_DIR_PREFIX, dir=self._temp_parent)
        return self._scratch_dir


def secure_delete(path: str) -> None:
    """Overwrite a file with random bytes, sync it, then unlink it.

    Best effort on copy-on-write and flash storage, where the old blocks may
    survive the overwrite.
    """
    size = os.path.getsize(path)
    with open(path, "r+b") as f:
        remaining = size
        while remaining > 0:
            n = min(COPY_CHUNK_SIZE, remaining)
            f.write(os.urandom(n))
            remaining -= n
        f.flush()
        os.fsync(f.fileno())
    os.remove(path)
    logger.debug("Securely deleted %s (%d bytes)", path, size)


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
