"""
Backup error taxonomy.

Storage-level failures (missing files, checksum mismatches) are raised by the
storage backends; see vmbackup.services.storage.base.
"""
from typing import List, Tuple


class BackupError(Exception):
    """Base exception for backup operations."""
    pass


class BackupNotFoundError(BackupError, LookupError):
    """A requested backup file is not part of its chain."""
    pass


class CorruptChainError(BackupError):
    """No full backup precedes a requested delta."""
    pass


class UnsupportedVersionError(BackupError):
    """Delta backup metadata carries an unknown format version."""

    def __init__(self, version):
        super().__init__(f"Unsupported delta backup version: {version}")
        self.version = version


class RemoteUnavailableError(BackupError):
    """Remote is missing or disabled."""
    pass


class ChainMergeError(BackupError):
    """The merge primitive failed to fold a delta into its parent."""

    def __init__(self, message: str, parent: str = None, child: str = None):
        super().__init__(message)
        self.parent = parent
        self.child = child


class PartialBackupFailure(BackupError):
    """One or more disks failed to save during a delta backup."""

    def __init__(self, failures: List[Tuple[str, BaseException]]):
        details = ", ".join(f"{key}: {error}" for key, error in failures)
        super().__init__(f"Rolling delta vm backup failed ({details})")
        self.failures = failures
