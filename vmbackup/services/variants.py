"""
Rolling backup variants that do not use delta chains:
plain full VM images, hypervisor snapshots and disaster-recovery copies.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Callable, List, Optional

from vmbackup.core.config import settings
from vmbackup.models.backup import format_timestamp
from vmbackup.models.hypervisor import VirtualMachine
from vmbackup.services.hypervisor.base import HypervisorConnection
from vmbackup.services.job_log import JobLogMixin, LogCallback
from vmbackup.services.retention.policy import RetentionPruner
from vmbackup.services.storage.base import StorageBackend

logger = logging.getLogger(__name__)

ROLLING_SNAPSHOT_PREFIX = "rollingSnapshot"
DR_TAG_PREFIX = "DR_"
DR_COPY_TAG = "Disaster Recovery"


class BackupVariants(JobLogMixin):
    """Rolling retention policies built on RetentionPruner."""

    logger = logger

    def __init__(
        self,
        hypervisor: HypervisorConnection,
        pruner: Optional[RetentionPruner] = None,
        clock: Optional[Callable[[], datetime]] = None,
        log_callback: Optional[LogCallback] = None
    ):
        self.hypervisor = hypervisor
        self.pruner = pruner or RetentionPruner()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.log_callback = log_callback

    def _timestamp(self) -> str:
        return format_timestamp(self.clock())

    async def export_vm_to_file(
        self,
        vm_id: str,
        storage: StorageBackend,
        file: str,
        compress: bool = False,
        only_metadata: bool = False
    ) -> int:
        """
        Export a full VM image into `file`. A partial file is removed on failure.

        Returns:
            Number of bytes written
        """
        source = await self.hypervisor.export_vm(vm_id, compress=compress, only_metadata=only_metadata)

        try:
            async with storage.create_output_stream(file) as output:
                async for chunk in source:
                    await output.write(chunk)
        except Exception:
            try:
                await storage.unlink(file)
            except Exception as e:
                logger.warning(f"Failed to remove partial VM image {file}: {e}")
            raise

        return output.bytes_written

    async def rolling_backup_vm(
        self,
        vm_id: str,
        storage: StorageBackend,
        tag: str,
        depth: int,
        compress: bool = False,
        only_metadata: bool = False
    ) -> str:
        """
        Export a full VM image to `<timestamp>_<tag>_<vm-name>.<ext>` and keep
        the newest `depth` images of this tag and VM.

        Returns:
            Path of the new image
        """
        vm = self.hypervisor.get_object(vm_id)
        ext = settings.VM_IMAGE_EXT

        pattern = re.compile(
            "^[^_]+_" + re.escape(f"{tag}_{vm.name_label}.{ext}") + "$"
        )
        backups = sorted(name for name in await storage.list() if pattern.match(name))

        file = f"{self._timestamp()}_{tag}_{vm.name_label}.{ext}"
        size = await self.export_vm_to_file(vm.id, storage, file, compress=compress, only_metadata=only_metadata)

        self._log("INFO", f"Exported {vm.name_label} to {file}", {"size": size})

        await self.pruner.prune(backups, depth - 1, storage.unlink)
        return file

    async def rolling_snapshot_vm(self, vm_id: str, tag: str, depth: int) -> VirtualMachine:
        """
        Snapshot a VM as `rollingSnapshot_<timestamp>_<tag>_<vm-name>` and keep
        the newest `depth` snapshots of this tag.
        """
        vm = self.hypervisor.get_object(vm_id)

        pattern = re.compile(f"^{ROLLING_SNAPSHOT_PREFIX}_[^_]+_" + re.escape(tag) + "_")
        snapshots = sorted(
            (s for s in self.hypervisor.list_snapshots(vm) if pattern.match(s.name_label)),
            key=lambda s: s.name_label
        )

        snapshot = await self.hypervisor.snapshot_vm(
            vm.id,
            f"{ROLLING_SNAPSHOT_PREFIX}_{self._timestamp()}_{tag}_{vm.name_label}"
        )
        self._log("INFO", f"Created snapshot {snapshot.name_label}")

        await self.pruner.prune(
            snapshots,
            depth - 1,
            lambda old: self.hypervisor.delete_vm(old.id, True)
        )
        return snapshot

    async def rolling_dr_copy_vm(
        self,
        vm_id: str,
        repository_id: str,
        tag: str,
        depth: int,
        target: Optional[HypervisorConnection] = None
    ) -> VirtualMachine:
        """
        Copy a VM onto a disaster-recovery repository as
        `<vm-name>_DR_<tag>_<timestamp>` and keep the newest `depth` copies.

        Args:
            vm_id: Source VM
            repository_id: Repository on the target pool
            tag: Job tag
            depth: Number of copies to keep
            target: Pool holding the repository (defaults to the source pool)
        """
        target = target or self.hypervisor
        tag = f"{DR_TAG_PREFIX}{tag}"

        vm = self.hypervisor.get_object(vm_id)
        repository = target.get_object(repository_id)

        pattern = re.compile(
            "^" + re.escape(f"{vm.name_label}_{tag}_") + "[0-9]{8}T[0-9]{6}Z$"
        )
        older_copies: List[VirtualMachine] = sorted(
            (copy for copy in target.list_repository_vms(repository) if pattern.match(copy.name_label)),
            key=lambda copy: copy.name_label
        )

        copy_name = f"{vm.name_label}_{tag}_{self._timestamp()}"
        dr_copy = await self.hypervisor.remote_copy_vm(vm.id, target, repository.id, copy_name)
        await target.add_tag(dr_copy.id, DR_COPY_TAG)

        self._log("INFO", f"Created disaster recovery copy {copy_name} on {repository.name_label}")

        await self.pruner.prune(
            older_copies,
            depth - 1,
            lambda old: target.delete_vm(old.id, True)
        )
        return dr_copy
