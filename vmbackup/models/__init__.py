"""
Plain data records shared by the backup services.
"""
from vmbackup.models.remote import Remote, StorageType
from vmbackup.models.hypervisor import (
    VirtualMachine,
    VirtualDisk,
    DiskAttachment,
    Repository,
    DeltaExport,
    ExportStream
)
from vmbackup.models.backup import BackupEntry, BackupKind

__all__ = [
    "Remote",
    "StorageType",
    "VirtualMachine",
    "VirtualDisk",
    "DiskAttachment",
    "Repository",
    "DeltaExport",
    "ExportStream",
    "BackupEntry",
    "BackupKind",
]
