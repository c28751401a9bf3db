"""
Delta VM backups: export, per-disk chain persistence, consolidation,
retention and import.

Remote layout for one VM and tag:

    vm_delta_<tag>_<vm-uuid>/
        <timestamp>_<vm-name>.json          metadata (one per backup)
        disk_<disk-uuid>/
            <timestamp>_full.<ext>
            <timestamp>_delta.<ext>
"""
import asyncio
import json
import logging
import posixpath
from datetime import datetime, timezone
from typing import Callable, Dict, Any, List, Optional

from packaging.version import InvalidVersion, Version

from vmbackup.core.config import settings
from vmbackup.models.backup import BackupKind, format_timestamp
from vmbackup.models.hypervisor import DeltaExport, VirtualMachine
from vmbackup.services.chain.catalog import ChainCatalog
from vmbackup.services.chain.merge import ChainMerger
from vmbackup.services.compensation import CompensationStack
from vmbackup.services.concurrency import BackgroundTasks, settle_all
from vmbackup.services.errors import PartialBackupFailure, UnsupportedVersionError
from vmbackup.services.hypervisor.base import HypervisorConnection
from vmbackup.services.job_log import JobLogMixin, LogCallback
from vmbackup.services.retention.policy import RetentionPruner
from vmbackup.services.storage.base import StorageBackend, join_path

logger = logging.getLogger(__name__)

DELTA_BACKUP_EXT = ".json"

DELTA_BASE_VM_SNAPSHOT = "DELTA_BASE_VM_SNAPSHOT"
# Per-disk base snapshots left behind by older releases
LEGACY_DELTA_BASE_DISK_SNAPSHOT = "DELTA_BASE_DISK_SNAPSHOT"
DELTA_COPY_BASE_TAG = "vmbackup:base_delta"


def get_vm_delta_dir(tag: str, vm_uuid: str) -> str:
    return f"vm_delta_{tag}_{vm_uuid}"


def get_disk_dir(disk_uuid: str) -> str:
    return f"disk_{disk_uuid}"


def is_delta_backup(name: str) -> bool:
    return name.endswith(DELTA_BACKUP_EXT)


def strip_delta_backup_ext(name: str) -> str:
    return name[:-len(DELTA_BACKUP_EXT)]


def is_supported_version(version: str) -> bool:
    """True for metadata versions compatible with 1.x (`^1`)."""
    try:
        parsed = Version(version)
    except InvalidVersion:
        return False
    return parsed.major == 1 and not parsed.is_prerelease


class DeltaExportCoordinator(JobLogMixin):
    """Drives rolling delta backups of VMs onto a remote and their import."""

    logger = logger

    def __init__(
        self,
        hypervisor: HypervisorConnection,
        merger: ChainMerger,
        catalog: Optional[ChainCatalog] = None,
        pruner: Optional[RetentionPruner] = None,
        background: Optional[BackgroundTasks] = None,
        clock: Optional[Callable[[], datetime]] = None,
        log_callback: Optional[LogCallback] = None
    ):
        """
        Args:
            hypervisor: Connection to the pool hosting the VMs
            merger: Chain merger used after each successful backup
            catalog: Disk chain catalog (defaults to the merger's)
            pruner: Retention pruner
            background: Dispatcher for best-effort cleanups
            clock: Returns the current time (UTC); used for file timestamps
            log_callback: Optional job log callback
        """
        self.hypervisor = hypervisor
        self.merger = merger
        self.catalog = catalog or merger.catalog
        self.pruner = pruner or RetentionPruner()
        self.background = background or BackgroundTasks()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.log_callback = log_callback

    def _timestamp(self) -> str:
        return format_timestamp(self.clock())

    # ------------------------------------------------------------------
    # Backup

    async def rolling_delta_backup(
        self,
        vm_id: str,
        storage: StorageBackend,
        tag: str,
        depth: int
    ) -> str:
        """
        Back up a VM as a delta against its last base snapshot for this tag.

        Disks are saved concurrently; if any of them fails, everything this
        call created (disk files, export snapshot) is removed and
        PartialBackupFailure is raised without writing metadata. Metadata
        older than the newest `depth` backups is deleted inside the same
        rollback scope; disk chains are merged down to `depth` only once the
        backup has succeeded.

        Args:
            vm_id: VM to back up
            storage: Storage handler of an enabled remote
            tag: Backup job tag; separates independent rolling sets
            depth: Number of backups to keep (at least 1)

        Returns:
            Path of the backup (metadata path without extension)

        Raises:
            PartialBackupFailure: If one or more disks could not be saved
        """
        if depth < 1:
            raise ValueError(f"Delta backup depth must be at least 1, got {depth}")

        vm = self.hypervisor.get_object(vm_id)
        base_label = f"{DELTA_BASE_VM_SNAPSHOT}_{tag}"

        bases = sorted(
            (s for s in self.hypervisor.list_snapshots(vm) if s.name_label == base_label),
            key=lambda s: s.snapshot_time or datetime.min.replace(tzinfo=timezone.utc)
        )
        base_vm = bases.pop() if bases else None
        for base in bases:
            self.background.dispatch(
                self.hypervisor.delete_vm(base.id, True),
                f"delete old base {base.id} of {vm.name_label}"
            )

        vm_dir = get_vm_delta_dir(tag, vm.uuid)
        full_disks_required = await self._find_disks_missing_full(vm, storage, vm_dir)

        self._log("INFO", f"Starting rolling delta backup of {vm.name_label}", {
            "operation": "delta_backup_start",
            "vm": vm.uuid,
            "tag": tag,
            "base": base_vm.id if base_vm else None,
            "full_disks_required": full_disks_required
        })

        async with CompensationStack(f"rolling delta backup of {vm.name_label}") as compensations:
            delta = await self.hypervisor.export_delta_vm(
                vm.id,
                base_vm.id if base_vm else None,
                snapshot_name_label=base_label,
                full_disks_required=full_disks_required,
                disable_base_tags=True
            )
            compensations.register(lambda: self._cancel_export(delta))

            keys = list(delta.disks)
            outcomes = await settle_all(
                self._save_disk_backup(
                    storage,
                    vm_dir,
                    delta,
                    key,
                    is_full=base_vm is None
                    or delta.disks[key].get("snapshot_of") in full_disks_required
                )
                for key in keys
            )

            saved: List[str] = []
            failures = []
            for key, outcome in zip(keys, outcomes):
                if outcome.ok:
                    delta.disks[key] = {**delta.disks[key], "relative_path": outcome.value}
                    saved.append(outcome.value)
                else:
                    self._log("ERROR", f"Rejected disk backup {key}: {outcome.error}")
                    failures.append((key, outcome.error))

            compensations.register(lambda: self._remove_disk_backups(storage, vm_dir, saved))

            if failures:
                raise PartialBackupFailure(failures)

            backup_name = f"{self._timestamp()}_{vm.name_label}"
            info_path = join_path(vm_dir, f"{backup_name}{DELTA_BACKUP_EXT}")

            compensations.register(lambda: self._unlink_quietly(storage, info_path))

            await storage.output_file(info_path, json.dumps(delta.to_metadata(), indent=2))

            await self._remove_old_delta_backups(storage, vm_dir, depth)

        # Merging rewrites chain files in place and cannot be rolled back
        await self._merge_disk_chains(storage, vm_dir, saved, depth)

        if base_vm:
            self.background.dispatch(
                self.hypervisor.delete_vm(base_vm.id, True),
                f"delete previous base {base_vm.id} of {vm.name_label}"
            )

        backup_path = join_path(vm_dir, backup_name)
        self._log("INFO", f"Rolling delta backup of {vm.name_label} completed", {
            "operation": "delta_backup_complete",
            "path": backup_path,
            "disks": saved
        })
        return backup_path

    async def _find_disks_missing_full(
        self,
        vm: VirtualMachine,
        storage: StorageBackend,
        vm_dir: str
    ) -> List[str]:
        """Ids of the VM's disks that have no full backup on the remote yet."""
        disks = [
            self.hypervisor.get_object(attachment.disk_id)
            for attachment in self.hypervisor.list_disk_attachments(vm)
            if attachment.disk_id and attachment.type == "Disk"
        ]

        has_full = await asyncio.gather(*(
            self.catalog.has_full_backup(storage, join_path(vm_dir, get_disk_dir(disk.uuid)))
            for disk in disks
        ))

        return [disk.id for disk, ok in zip(disks, has_full) if not ok]

    async def _save_disk_backup(
        self,
        storage: StorageBackend,
        vm_dir: str,
        delta: DeltaExport,
        key: str,
        is_full: bool
    ) -> str:
        """
        Write one exported disk stream into its chain directory.

        Returns:
            Path of the new file relative to `vm_dir`
        """
        disk = self.hypervisor.get_object(delta.disks[key]["snapshot_of"])
        disk_dir = get_disk_dir(disk.uuid)

        legacy_bases = sorted(
            (s for s in self.hypervisor.list_disk_snapshots(disk)
             if s.name_label == LEGACY_DELTA_BASE_DISK_SNAPSHOT),
            key=lambda s: s.snapshot_time or datetime.min.replace(tzinfo=timezone.utc)
        )
        for base in legacy_bases:
            self.background.dispatch(
                self.hypervisor.delete_disk(base.id),
                f"delete legacy disk base {base.id}"
            )

        kind = BackupKind.FULL if is_full else BackupKind.DELTA
        filename = f"{self._timestamp()}_{kind.value}.{self.catalog.ext}"
        path = join_path(vm_dir, disk_dir, filename)

        try:
            # Fulls get no sidecar; merges rewrite them in place
            async with storage.create_output_stream(path, checksum=not is_full) as output:
                async for chunk in delta.streams[key]:
                    await output.write(chunk)
        except Exception:
            await self._unlink_quietly(storage, path, checksum=True)
            raise

        self._log("DEBUG", f"Saved {kind.value} backup of disk {disk.uuid}", {
            "path": path,
            "bytes": output.bytes_written
        })
        return f"{disk_dir}/{filename}"

    async def _cancel_export(self, delta: DeltaExport) -> None:
        """Cancel pending export streams, then delete the export snapshot."""
        outcomes = await settle_all(stream.cancel() for stream in delta.streams.values())
        for outcome in outcomes:
            if not outcome.ok:
                logger.warning(f"Failed to cancel export stream: {outcome.error}")

        await self.hypervisor.delete_vm(delta.vm["id"], True)

    async def _remove_disk_backups(self, storage: StorageBackend, vm_dir: str, paths: List[str]) -> None:
        await asyncio.gather(*(
            self._unlink_quietly(storage, join_path(vm_dir, path), checksum=True)
            for path in paths
        ))

    async def _unlink_quietly(self, storage: StorageBackend, path: str, checksum: bool = False) -> None:
        try:
            await storage.unlink(path, checksum=checksum)
        except Exception as e:
            logger.warning(f"Failed to remove {path}: {e}")

    async def _merge_disk_chains(
        self,
        storage: StorageBackend,
        vm_dir: str,
        saved: List[str],
        depth: int
    ) -> None:
        """
        Merge each saved disk's chain down to `depth`.

        A failed merge leaves the chain longer than `depth`; the next backup
        retries it.
        """
        disk_dirs = [join_path(vm_dir, posixpath.dirname(path)) for path in saved]
        outcomes = await settle_all(
            self.merger.merge_if_needed(storage, disk_dir, depth) for disk_dir in disk_dirs
        )

        for disk_dir, outcome in zip(disk_dirs, outcomes):
            if not outcome.ok:
                self._log("ERROR", f"Merge of {disk_dir} failed, will retry on next backup: {outcome.error}", {
                    "operation": "merge_failed",
                    "dir": disk_dir
                })

    async def list_delta_backups(self, storage: StorageBackend, vm_dir: str) -> List[str]:
        """Metadata filenames in a VM delta directory, oldest first."""
        return sorted(filter(is_delta_backup, await storage.list(vm_dir)))

    async def _remove_old_delta_backups(self, storage: StorageBackend, vm_dir: str, depth: int) -> None:
        backups = await self.list_delta_backups(storage, vm_dir)

        async def _delete(backup: str) -> None:
            await storage.unlink(join_path(vm_dir, backup))
            # Metadata-only VM image written by legacy (v0) backups
            await self._unlink_quietly(
                storage,
                join_path(vm_dir, f"{strip_delta_backup_ext(backup)}.{settings.VM_IMAGE_EXT}")
            )

        await self.pruner.prune(backups, depth, _delete)

    # ------------------------------------------------------------------
    # Import

    async def import_delta_backup(
        self,
        storage: StorageBackend,
        file_path: str,
        repository_id: str
    ) -> str:
        """
        Restore a delta backup as a new VM.

        Args:
            storage: Storage handler of the remote
            file_path: Backup path (metadata path without extension)
            repository_id: Repository receiving the new disks

        Returns:
            Id of the imported VM

        Raises:
            UnsupportedVersionError: If the metadata version is not 1.x
            BackupNotFoundError: If a referenced disk backup is missing
            CorruptChainError: If a disk chain has no full backup
        """
        metadata = json.loads(await storage.read_file(f"{file_path}{DELTA_BACKUP_EXT}"))
        version = metadata.get("version")

        if not version:
            vm = await self._legacy_import_delta_vm_backup(storage, file_path, metadata, repository_id)
        elif is_supported_version(version):
            vm = await self._import_delta_vm_backup(storage, file_path, metadata, repository_id)
        else:
            raise UnsupportedVersionError(version)

        self._log("INFO", f"Imported delta backup {file_path} as VM {vm.id}", {
            "operation": "delta_import_complete",
            "version": version
        })
        return vm.id

    async def _import_delta_vm_backup(
        self,
        storage: StorageBackend,
        file_path: str,
        metadata: Dict[str, Any],
        repository_id: str
    ) -> VirtualMachine:
        base_path = posixpath.dirname(file_path)
        delta = DeltaExport.from_metadata(metadata)

        async def _open_chain(key: str, disk: Dict[str, Any]) -> None:
            relative_path = disk["relative_path"]
            disk_dir = join_path(base_path, posixpath.dirname(relative_path))
            backups = await self.catalog.list_dependencies(storage, join_path(base_path, relative_path))

            delta.streams[key] = [
                await storage.create_read_stream(
                    join_path(disk_dir, backup),
                    checksum=True,
                    ignore_missing_checksum=True
                )
                for backup in backups
            ]

        await asyncio.gather(*(_open_chain(key, disk) for key, disk in delta.disks.items()))

        return await self.hypervisor.import_delta_vm(
            delta,
            repository_id,
            disable_start_after_import=False
        )

    async def _legacy_import_delta_vm_backup(
        self,
        storage: StorageBackend,
        file_path: str,
        metadata: Dict[str, Any],
        repository_id: str
    ) -> VirtualMachine:
        """Import a version 0 backup: VM image holds the metadata, disks are replayed one by one."""
        base_path = posixpath.dirname(file_path)

        async with CompensationStack(f"legacy import of {file_path}") as compensations:
            stream = await storage.create_read_stream(f"{file_path}.{settings.VM_IMAGE_EXT}")
            vm = await self.hypervisor.import_vm(stream, repository_id, only_metadata=True)
            compensations.register(lambda: self.hypervisor.delete_vm(vm.id, True))

            vm_name = vm.name_label

            await asyncio.gather(
                self.hypervisor.add_forbidden_operation(vm.id, "start", "Delta backup import..."),
                self.hypervisor.set_properties(vm.id, name_label=f"[Importing...] {vm_name}")
            )

            # The imported metadata may reference disks of the original VM
            await self.hypervisor.destroy_disk_attachments(vm.id)

            disk_ids: Dict[str, str] = {}

            async def _import_disk(key: str, info: Dict[str, Any]) -> None:
                disk = await self.hypervisor.create_disk(info.get("virtual_size", 0), info, repository_id)
                compensations.register(lambda: self.hypervisor.delete_disk(disk.id))

                relative_path = info["relative_path"]
                disk_dir = join_path(base_path, posixpath.dirname(relative_path))
                backups = await self.catalog.list_dependencies(storage, join_path(base_path, relative_path))

                for backup in backups:
                    stream = await storage.create_read_stream(join_path(disk_dir, backup))
                    await self.hypervisor.import_disk_content(disk.id, stream, format=self.catalog.ext)

                disk_ids[key] = disk.id

            await asyncio.gather(*(_import_disk(key, info) for key, info in metadata.get("disks", {}).items()))

            await asyncio.gather(*(
                self.hypervisor.attach_disk(disk_ids[attachment["disk"]], vm.id, attachment)
                for attachment in metadata.get("attachments", {}).values()
                if attachment.get("disk") in disk_ids
            ))

            await asyncio.gather(
                self.hypervisor.remove_forbidden_operation(vm.id, "start"),
                self.hypervisor.set_properties(vm.id, name_label=vm_name)
            )

        return vm

    # ------------------------------------------------------------------
    # Pool to pool replication

    async def delta_copy_vm(
        self,
        vm_id: str,
        repository_id: str,
        target: Optional[HypervisorConnection] = None
    ) -> str:
        """
        Replicate a VM onto a repository as a delta against the previous copy.

        The export snapshot becomes the base of the next copy; it is recorded
        in the source VM's other_config.

        Returns:
            Id of the replicated VM
        """
        target = target or self.hypervisor
        vm = self.hypervisor.get_object(vm_id)
        repository = target.get_object(repository_id)

        base_key = f"{DELTA_COPY_BASE_TAG}:{repository.uuid}"
        base_id = vm.other_config.get(base_key)
        local_base = self.hypervisor.get_object(base_id, None) if base_id else None

        async with CompensationStack(f"delta copy of {vm.name_label}") as compensations:
            delta = await self.hypervisor.export_delta_vm(
                vm.id,
                local_base.id if local_base else None,
                snapshot_name_label=f"DELTA_EXPORT: {repository.name_label} ({repository.uuid})"
            )
            compensations.register(lambda: self._cancel_export(delta))

            copy = await target.import_delta_vm(delta, repository.id, delete_base=True)

        if local_base:
            self.background.dispatch(
                self.hypervisor.delete_vm(local_base.id, True),
                f"delete previous copy base {local_base.id}"
            )

        self.background.dispatch(
            self.hypervisor.update_other_config(vm.id, {base_key: delta.vm["id"]}),
            f"record copy base of {vm.name_label}"
        )

        self._log("INFO", f"Delta copy of {vm.name_label} to {repository.name_label} completed", {
            "operation": "delta_copy_complete",
            "copy": copy.id
        })
        return copy.id
