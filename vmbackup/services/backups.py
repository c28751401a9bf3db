"""
Backup service: entry point for every backup, copy and restore operation.

Resolves remotes (refusing missing or disabled ones before any remote I/O)
and delegates to the delta coordinator and the rolling variants.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from vmbackup.core.config import settings
from vmbackup.models.hypervisor import VirtualMachine
from vmbackup.services.chain.catalog import ChainCatalog
from vmbackup.services.chain.merge import ChainMerger
from vmbackup.services.chain.qemu import MergePrimitive, QemuImgMerge
from vmbackup.services.concurrency import BackgroundTasks
from vmbackup.services.delta import (
    DeltaExportCoordinator,
    strip_delta_backup_ext
)
from vmbackup.services.hypervisor.base import HypervisorConnection
from vmbackup.services.job_log import JobLogMixin, LogCallback
from vmbackup.services.remotes import RemoteRegistry
from vmbackup.services.retention.policy import RetentionPruner
from vmbackup.services.storage.base import join_path
from vmbackup.services.variants import BackupVariants

logger = logging.getLogger(__name__)


class BackupService(JobLogMixin):
    """Backup operations for VMs of one hypervisor pool."""

    logger = logger

    def __init__(
        self,
        hypervisor: HypervisorConnection,
        remotes: RemoteRegistry,
        merge: Optional[MergePrimitive] = None,
        clock: Optional[Callable[[], datetime]] = None,
        log_callback: Optional[LogCallback] = None
    ):
        """
        Initialize the backup service.

        Args:
            hypervisor: Connection to the pool hosting the VMs
            remotes: Registry of backup targets
            merge: Delta merge primitive (defaults to qemu-img)
            clock: Returns the current UTC time; used for all timestamps
            log_callback: Optional callback for verbose job logging.
                          Signature: callback(level: str, message: str, details: dict = None)
        """
        self.hypervisor = hypervisor
        self.remotes = remotes
        self.log_callback = log_callback
        self.background = BackgroundTasks()

        pruner = RetentionPruner()
        catalog = ChainCatalog(pruner=pruner)
        self.delta = DeltaExportCoordinator(
            hypervisor,
            ChainMerger(merge or QemuImgMerge(), catalog),
            catalog=catalog,
            pruner=pruner,
            background=self.background,
            clock=clock,
            log_callback=log_callback
        )
        self.variants = BackupVariants(hypervisor, pruner=pruner, clock=clock, log_callback=log_callback)

    async def list_remote_backups(self, remote_id: str) -> List[str]:
        """
        List restorable backups on a remote.

        Returns:
            Plain VM image filenames, then delta backups as
            `<vm-delta-dir>/<metadata name without extension>`
        """
        handler = self.remotes.get_handler(remote_id)
        files = await handler.list()

        ext = f".{settings.VM_IMAGE_EXT}"
        backups = sorted(name for name in files if name.endswith(ext))

        for delta_dir in sorted(name for name in files if name.startswith("vm_delta_")):
            backups.extend(
                join_path(delta_dir, strip_delta_backup_ext(name))
                for name in await self.delta.list_delta_backups(handler, delta_dir)
            )

        return backups

    async def import_vm_backup(self, remote_id: str, file: str, repository_id: str) -> str:
        """Import a plain VM image; returns the new VM id."""
        handler = self.remotes.get_handler(remote_id)
        stream = await handler.create_read_stream(file)
        vm = await self.hypervisor.import_vm(stream, repository_id)
        self._log("INFO", f"Imported {file} as VM {vm.id}")
        return vm.id

    async def backup_vm(
        self,
        vm_id: str,
        remote_id: str,
        file: str,
        compress: bool = False,
        only_metadata: bool = False
    ) -> int:
        """Export a VM image to a named file on a remote; returns bytes written."""
        remote = self.remotes.require_enabled(remote_id)
        handler = self.remotes.get_handler(remote)
        return await self.variants.export_vm_to_file(
            vm_id, handler, file, compress=compress, only_metadata=only_metadata
        )

    async def rolling_backup_vm(
        self,
        vm_id: str,
        remote_id: str,
        tag: str,
        depth: int,
        compress: bool = False,
        only_metadata: bool = False
    ) -> str:
        remote = self.remotes.require_enabled(remote_id)
        return await self.variants.rolling_backup_vm(
            vm_id,
            self.remotes.get_handler(remote),
            tag,
            depth,
            compress=compress,
            only_metadata=only_metadata
        )

    async def rolling_delta_backup(self, vm_id: str, remote_id: str, tag: str, depth: int) -> str:
        remote = self.remotes.require_enabled(remote_id)
        return await self.delta.rolling_delta_backup(vm_id, self.remotes.get_handler(remote), tag, depth)

    async def import_delta_backup(self, remote_id: str, file_path: str, repository_id: str) -> str:
        handler = self.remotes.get_handler(remote_id)
        return await self.delta.import_delta_backup(handler, file_path, repository_id)

    async def delta_copy_vm(
        self,
        vm_id: str,
        repository_id: str,
        target: Optional[HypervisorConnection] = None
    ) -> str:
        return await self.delta.delta_copy_vm(vm_id, repository_id, target)

    async def rolling_snapshot_vm(self, vm_id: str, tag: str, depth: int) -> VirtualMachine:
        return await self.variants.rolling_snapshot_vm(vm_id, tag, depth)

    async def rolling_dr_copy_vm(
        self,
        vm_id: str,
        repository_id: str,
        tag: str,
        depth: int,
        target: Optional[HypervisorConnection] = None
    ) -> VirtualMachine:
        return await self.variants.rolling_dr_copy_vm(vm_id, repository_id, tag, depth, target)

    async def close(self) -> None:
        """Wait for outstanding background cleanups."""
        if self.background.pending:
            logger.info(f"Waiting for {self.background.pending} background task(s)")
        await self.background.drain()
