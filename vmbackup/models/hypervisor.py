"""
Hypervisor object records.

These mirror the hypervisor's own object cache; services only read them and
go through HypervisorConnection for every change.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, AsyncIterator, Protocol, runtime_checkable

# Version written into delta backup metadata by this release
DELTA_BACKUP_VERSION = "1.0.0"


@dataclass
class VirtualMachine:
    """A VM, VM snapshot or VM template."""
    id: str
    uuid: str
    name_label: str
    other_config: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    is_snapshot: bool = False
    snapshot_of: Optional[str] = None
    snapshot_time: Optional[datetime] = None


@dataclass
class VirtualDisk:
    """A virtual disk image (or a snapshot of one)."""
    id: str
    uuid: str
    name_label: str = ""
    virtual_size: int = 0
    snapshot_of: Optional[str] = None
    snapshot_time: Optional[datetime] = None
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DiskAttachment:
    """Attachment of a disk (or CD drive) to a VM."""
    id: str
    vm_id: str
    disk_id: Optional[str] = None
    type: str = "Disk"
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Repository:
    """A storage repository on the hypervisor side."""
    id: str
    uuid: str
    name_label: str = ""


@runtime_checkable
class ExportStream(Protocol):
    """Byte stream produced by a hypervisor export; can be cancelled."""

    def __aiter__(self) -> AsyncIterator[bytes]:
        ...

    async def cancel(self) -> None:
        ...


@dataclass
class DeltaExport:
    """
    Result of a (delta or full) VM export.

    `vm` describes the transient export snapshot, `disks` and `attachments`
    are keyed by export-local ids, and `streams` holds one stream per disk
    key (or, on import, an ordered list of chain streams per disk key).
    """
    vm: Dict[str, Any]
    disks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    attachments: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    streams: Dict[str, Any] = field(default_factory=dict)
    version: Optional[str] = DELTA_BACKUP_VERSION

    def to_metadata(self) -> Dict[str, Any]:
        """JSON-safe descriptor: everything but the live streams."""
        return {
            "version": self.version,
            "vm": self.vm,
            "disks": self.disks,
            "attachments": self.attachments,
        }

    @classmethod
    def from_metadata(cls, metadata: Dict[str, Any]) -> "DeltaExport":
        return cls(
            vm=metadata.get("vm", {}),
            disks=metadata.get("disks", {}),
            attachments=metadata.get("attachments", {}),
            version=metadata.get("version"),
        )
