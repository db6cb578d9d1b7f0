from __future__ import annotations

from typing import Optional


class ComicVaultError(Exception):
    """Base class for comicvault errors.

    ``description`` and ``recovery_suggestion`` are safe to show to a user:
    they never contain filesystem paths. ``str(exc)`` may carry more detail
    for logs.
    """

    description = "Something went wrong"
    recovery_suggestion: Optional[str] = None
    retryable = False

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.description)


# Archive listing / extraction
class ArchiveError(ComicVaultError):
    pass


class MaliciousPath(ArchiveError):
    description = "The archive contains an unsafe file path"
    recovery_suggestion = "The file may have been tampered with. Try re-downloading it from a trusted source."

    def __init__(self, path: str, reason: str = "unsafe path"):
        self.path = path
        self.reason = reason
        super().__init__(f"Malicious path detected ({reason}): {path!r}")


class EntryTooLarge(ArchiveError):
    description = "A page in the archive is too large to open"
    recovery_suggestion = "The archive may be corrupted or crafted to exhaust storage. Try re-downloading the file."

    def __init__(self, path: str, size: int, limit: int):
        self.path = path
        self.size = size
        self.limit = limit
        super().__init__(f"Entry too large: {path!r} ({size} bytes, limit {limit})")


class TooManyEntries(ArchiveError):
    description = "The archive contains too many files"
    recovery_suggestion = "Split the comic into smaller archives."

    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(f"Archive has too many entries: {count} (limit {limit})")


class UnsupportedFormat(ArchiveError):
    description = "This file format is not supported"
    recovery_suggestion = "Ensure the file is a valid comic archive (CBZ, CBR, CB7), an EPUB, a PDF, an image or a folder of images."

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(f"Unsupported format: {detail}" if detail else None)


class ExtractionFailed(ArchiveError):
    description = "Failed to read a page from the archive"
    recovery_suggestion = "Try re-downloading the file or use a different source."
    retryable = True

    def __init__(self, cause: BaseException, path: Optional[str] = None):
        self.cause = cause
        self.path = path
        where = f" ({path!r})" if path else ""
        super().__init__(f"Extraction failed{where}: {cause}")


# Reading
class ReaderError(ComicVaultError):
    pass


class NoPages(ReaderError):
    description = "No pages to display"
    recovery_suggestion = "The comic appears to be empty or only contains unsupported file types."


class InvalidPageIndex(ReaderError):
    description = "Invalid page number"
    recovery_suggestion = "Navigate using the page controls."

    def __init__(self, index: int, count: int):
        self.index = index
        self.count = count
        super().__init__(f"Invalid page index {index} (page count {count})")


# Cancellation / deadlines
class OperationCancelled(ComicVaultError):
    description = "The operation was cancelled"


class OperationTimeout(ComicVaultError):
    description = "The operation took too long"
    recovery_suggestion = "Try again."
    retryable = True


# Vault
class VaultError(ComicVaultError):
    pass


class DecryptionFailed(VaultError):
    description = "The file could not be decrypted"
    recovery_suggestion = "The vault data may be corrupted. Try resetting the vault."


class VaultLocked(VaultError):
    description = "Vault is locked"
    recovery_suggestion = "Unlock your vault first."


class VaultNotSetUp(VaultError):
    description = "Vault has not been set up"
    recovery_suggestion = "Set up a vault password first."


class VaultAlreadySetUp(VaultError):
    description = "Vault is already set up"
    recovery_suggestion = "Unlock the existing vault or delete it before setting up a new one."


class IncorrectPassword(VaultError):
    description = "Incorrect password"
    recovery_suggestion = "Please try again with the correct password."


class BiometricFailed(VaultError):
    description = "Biometric authentication failed"
    recovery_suggestion = "Try again or use your password instead."


class BiometricNotAvailable(VaultError):
    description = "Biometric authentication is not available"
    recovery_suggestion = "Please use your password to unlock the vault."


class FileAlreadyInVault(VaultError):
    description = "File is already in the vault"
    recovery_suggestion = "The file is already protected in the vault."


class FileNotInVault(VaultError):
    description = "File is not in the vault"
    recovery_suggestion = "The file must be in the vault to perform this action."


class VaultCorrupted(VaultError):
    description = "Vault data is corrupted"
    recovery_suggestion = "You may need to reset the vault. This will remove all encrypted files."
