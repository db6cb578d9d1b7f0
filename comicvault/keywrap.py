from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .encryption import KEY_SIZE, EncryptionService
from .errors import BiometricFailed, BiometricNotAvailable, DecryptionFailed, VaultCorrupted

logger = logging.getLogger(__name__)

_WRAP_AAD = b"CV_KEYWRAP\x00v1"


class KeyWrapper(ABC):
    """Seals the vault key so it can be recovered without the password.

    Implementations gate ``unwrap`` behind some user-presence check
    (biometrics, a hardware token, an OS keychain prompt).
    """

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def wrap(self, key: bytes) -> bytes:
        """Return an opaque blob the vault may store next to its config."""

    @abstractmethod
    def unwrap(self, blob: bytes, reason: str) -> bytes:
        """Recover the key; raises ``BiometricFailed`` when the user is not confirmed."""

    def forget(self) -> None:
        """Drop any device-side secret. Default: nothing to drop."""


class DeviceKeyWrapper(KeyWrapper):
    """Wraps the vault key with a random secret kept in a local file.

    ``authenticate(reason) -> bool`` is asked before every unwrap.
    """

    def __init__(
        self,
        secret_path: str,
        authenticate: Optional[Callable[[str], bool]],
        encryption: Optional[EncryptionService] = None,
    ):
        self.secret_path = secret_path
        self.authenticate = authenticate
        self._encryption = encryption or EncryptionService()

    def is_available(self) -> bool:
        return self.authenticate is not None

    def wrap(self, key: bytes) -> bytes:
        if not self.is_available():
            raise BiometricNotAvailable()
        return self._encryption.encrypt(key, self._secret(create=True), aad=_WRAP_AAD)

    def unwrap(self, blob: bytes, reason: str) -> bytes:
        if not self.is_available():
            raise BiometricNotAvailable()
        if not self.authenticate(reason):
            logger.info("Biometric authentication rejected")
            raise BiometricFailed()
        secret = self._secret(create=False)
        if secret is None:
            raise BiometricNotAvailable("Device secret is missing")
        try:
            key = self._encryption.decrypt(blob, secret, aad=_WRAP_AAD)
        except DecryptionFailed as exc:
            raise VaultCorrupted("Wrapped vault key could not be opened") from exc
        if len(key) != KEY_SIZE:
            raise VaultCorrupted("Wrapped vault key has the wrong length")
        return key

    def forget(self) -> None:
        try:
            os.remove(self.secret_path)
        except FileNotFoundError:
            pass

    def _secret(self, *, create: bool) -> Optional[bytes]:
        try:
            with open(self.secret_path, "rb") as f:
                secret = f.read()
        except FileNotFoundError:
            if not create:
                return None
            secret = os.urandom(KEY_SIZE)
            parent = os.path.dirname(os.path.abspath(self.secret_path))
            os.makedirs(parent, exist_ok=True)
            fd = os.open(self.secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(secret)
            return secret
        if len(secret) != KEY_SIZE:
            raise VaultCorrupted("Device secret has the wrong length")
        return secret
