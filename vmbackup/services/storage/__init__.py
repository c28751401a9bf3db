"""
Remote storage handlers.

A remote's `type` selects the backend; every backend exposes the same
checksum-aware handler API from StorageBackend.
"""
from typing import Dict, Any
from vmbackup.models.remote import StorageType
from vmbackup.services.storage.base import (
    StorageBackend,
    StorageError,
    StorageNotFoundError,
    StorageChecksumError,
    join_path
)
from vmbackup.services.storage.local import LocalStorage
from vmbackup.services.storage.s3 import S3Storage


def create_storage_backend(
    storage_type: StorageType,
    config: Dict[str, Any]
) -> StorageBackend:
    """
    Build the handler for a remote.

    Args:
        storage_type: Remote type
        config: Backend settings (`base_path` for local, bucket and credentials for S3)

    Raises:
        StorageError: For a remote type without a backend
    """
    if storage_type == StorageType.LOCAL:
        return LocalStorage(config)
    elif storage_type == StorageType.S3:
        return S3Storage(config)
    else:
        raise StorageError(f"No storage backend for remote type: {storage_type}")


__all__ = [
    "StorageBackend",
    "StorageError",
    "StorageNotFoundError",
    "StorageChecksumError",
    "StorageType",
    "LocalStorage",
    "S3Storage",
    "create_storage_backend",
    "join_path"
]
