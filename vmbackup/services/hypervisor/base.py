"""
Hypervisor control plane interface.

The hypervisor keeps its own object cache (VMs, disks, attachments,
snapshots, repositories), pushed by the server. Backup services only query it
through the synchronous lookups below and perform every change through the
async control-plane calls.
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Sequence

from vmbackup.models.hypervisor import (
    DeltaExport,
    DiskAttachment,
    ExportStream,
    Repository,
    VirtualDisk,
    VirtualMachine
)

_MISSING = object()


class HypervisorError(Exception):
    """Base exception for hypervisor operations."""
    pass


class HypervisorObjectNotFound(HypervisorError, LookupError):
    """Exception raised when an object is not in the hypervisor cache."""
    pass


class HypervisorConnection(ABC):
    """Abstract connection to a hypervisor pool."""

    # ------------------------------------------------------------------
    # Object cache queries

    @abstractmethod
    def _lookup(self, object_id: str) -> Optional[Any]:
        """Return the cached record with this id or uuid, or None."""
        pass

    def get_object(self, object_id: str, default: Any = _MISSING) -> Any:
        """
        Look up a VM, disk, attachment or repository by id or uuid.

        Raises:
            HypervisorObjectNotFound: If missing and no default is given
        """
        record = self._lookup(object_id)
        if record is None:
            if default is _MISSING:
                raise HypervisorObjectNotFound(f"No such object: {object_id}")
            return default
        return record

    @abstractmethod
    def list_snapshots(self, vm: VirtualMachine) -> List[VirtualMachine]:
        """Snapshots of a VM."""
        pass

    @abstractmethod
    def list_disk_snapshots(self, disk: VirtualDisk) -> List[VirtualDisk]:
        """Snapshots of a disk."""
        pass

    @abstractmethod
    def list_disk_attachments(self, vm: VirtualMachine) -> List[DiskAttachment]:
        """Disk and CD attachments of a VM."""
        pass

    @abstractmethod
    def list_repository_vms(self, repository: Repository) -> List[VirtualMachine]:
        """VMs whose first disk lives on a repository."""
        pass

    # ------------------------------------------------------------------
    # Export / import

    @abstractmethod
    async def export_delta_vm(
        self,
        vm_id: str,
        base_vm_id: Optional[str] = None,
        snapshot_name_label: Optional[str] = None,
        full_disks_required: Sequence[str] = (),
        disable_base_tags: bool = False
    ) -> DeltaExport:
        """
        Snapshot a VM and export it, as a delta against `base_vm_id` when given.

        Disks listed in `full_disks_required` are always exported in full.
        Each disk entry of the result carries `snapshot_of` (the live disk id).
        """
        pass

    @abstractmethod
    async def import_delta_vm(
        self,
        delta: DeltaExport,
        repository_id: str,
        delete_base: bool = False,
        disable_start_after_import: bool = True
    ) -> VirtualMachine:
        """
        Create a VM from a delta export.

        `delta.streams` maps each disk key to a stream, or to an ordered list
        of chain streams (full first) which are replayed in order.
        """
        pass

    @abstractmethod
    async def export_vm(
        self,
        vm_id: str,
        compress: bool = False,
        only_metadata: bool = False
    ) -> ExportStream:
        """Export a whole VM image."""
        pass

    @abstractmethod
    async def import_vm(
        self,
        stream: Any,
        repository_id: Optional[str] = None,
        only_metadata: bool = False
    ) -> VirtualMachine:
        """Import a whole VM image."""
        pass

    @abstractmethod
    async def create_disk(
        self,
        virtual_size: int,
        info: Dict[str, Any],
        repository_id: str
    ) -> VirtualDisk:
        pass

    @abstractmethod
    async def import_disk_content(self, disk_id: str, stream: Any, format: str) -> None:
        """Write (or apply, for a delta image) a disk image stream onto a disk."""
        pass

    # ------------------------------------------------------------------
    # Object lifecycle

    @abstractmethod
    async def attach_disk(self, disk_id: str, vm_id: str, info: Dict[str, Any]) -> DiskAttachment:
        pass

    @abstractmethod
    async def destroy_disk_attachments(self, vm_id: str) -> None:
        pass

    @abstractmethod
    async def delete_disk(self, disk_id: str) -> None:
        pass

    @abstractmethod
    async def delete_vm(self, vm_id: str, delete_disks: bool = True) -> None:
        pass

    @abstractmethod
    async def snapshot_vm(self, vm_id: str, name_label: str) -> VirtualMachine:
        pass

    @abstractmethod
    async def remote_copy_vm(
        self,
        vm_id: str,
        target: "HypervisorConnection",
        repository_id: str,
        name_label: str
    ) -> VirtualMachine:
        """Full copy of a VM onto a repository of (possibly) another pool."""
        pass

    # ------------------------------------------------------------------
    # Properties

    @abstractmethod
    async def add_tag(self, object_id: str, tag: str) -> None:
        pass

    @abstractmethod
    async def set_properties(self, object_id: str, **properties: Any) -> None:
        pass

    @abstractmethod
    async def update_other_config(self, object_id: str, entries: Dict[str, Optional[str]]) -> None:
        """Set (or remove, for None values) entries of an object's other_config."""
        pass

    @abstractmethod
    async def add_forbidden_operation(self, vm_id: str, operation: str, reason: str) -> None:
        pass

    @abstractmethod
    async def remove_forbidden_operation(self, vm_id: str, operation: str) -> None:
        pass
