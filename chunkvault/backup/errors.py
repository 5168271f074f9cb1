"""
Error kinds raised by the backup core.

Fatal errors abort the current operation and leave the repository index
untouched. Per-file problems are collected as FileFailure records and
reported alongside the successful part of the result.
"""

from dataclasses import dataclass
from typing import Iterable, List


@dataclass(frozen=True)
class FileFailure:
    """A single file that was skipped during backup or restore."""

    path: str
    reason: str

    def __str__(self):
        return f"{self.path}: {self.reason}"


class VaultError(Exception):
    """Base class for all repository errors."""
    pass


class NotFound(VaultError):
    """Raised when a chunk or snapshot does not exist."""
    pass


class IncompleteTree(VaultError):
    """Raised when a commit references chunks absent from the content store."""

    def __init__(self, missing: Iterable[str]):
        self.missing = sorted(missing)
        preview = ', '.join(digest[:12] for digest in self.missing[:5])
        more = f" (+{len(self.missing) - 5} more)" if len(self.missing) > 5 else ''
        super().__init__(f"Snapshot references {len(self.missing)} missing chunk(s): {preview}{more}")


class PartialFailure(VaultError):
    """Raised or reported when some files could not be processed."""

    def __init__(self, message: str, failures: List[FileFailure]):
        self.failures = list(failures)
        super().__init__(message)


class PartialRestore(PartialFailure):
    """Raised after a restore that had to skip one or more files."""

    def __init__(self, restored: int, failures: List[FileFailure]):
        self.restored = restored
        super().__init__(
            f"Restored {restored} file(s), skipped {len(failures)}",
            failures
        )


class StorageUnavailable(VaultError):
    """Raised when the repository storage cannot be read or written."""
    pass


class RepositoryLocked(StorageUnavailable):
    """Raised when a repository lock cannot be acquired in time."""
    pass


class InvalidRetentionRule(VaultError):
    """Raised for malformed retention configuration."""
    pass


class CorruptChunk(VaultError):
    """Raised when a stored chunk does not match its digest."""
    pass


class BackupCancelled(VaultError):
    """Raised when an in-flight operation is cancelled."""
    pass


class RepositoryError(VaultError):
    """Raised for missing or invalid repository configuration or keys."""
    pass
