"""Shared fixtures for vmbackup tests."""

import itertools
import uuid as uuid_lib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from vmbackup.models.hypervisor import (
    DeltaExport,
    DiskAttachment,
    Repository,
    VirtualDisk,
    VirtualMachine,
)
from vmbackup.models.remote import Remote, StorageType
from vmbackup.services.backups import BackupService
from vmbackup.services.hypervisor.base import HypervisorConnection, HypervisorError
from vmbackup.services.remotes import RemoteRegistry
from vmbackup.services.storage.local import LocalStorage


class FakeClock:
    """Returns a new UTC time, one minute later, on every call."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(minutes=1)
        return self.now


class FakeStream:
    """Export stream over fixed chunks; optionally fails after the first chunk."""

    def __init__(self, chunks: List[bytes], fail: bool = False):
        self.chunks = chunks
        self.fail = fail
        self.cancelled = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for index, chunk in enumerate(self.chunks):
            if self.fail and index > 0:
                raise HypervisorError("export stream interrupted")
            yield chunk
        if self.fail:
            raise HypervisorError("export stream interrupted")

    async def cancel(self) -> None:
        self.cancelled = True


async def read_stream(stream: Any) -> bytes:
    return b"".join([chunk async for chunk in stream])


class FakeHypervisor(HypervisorConnection):
    """In-memory pool: records every control-plane call."""

    def __init__(self, name: str = "pool"):
        self.name = name
        self.objects: Dict[str, Any] = {}
        self.repository_vms: Dict[str, List[str]] = {}
        self.disk_contents: Dict[str, List[bytes]] = {}
        self.forbidden: Dict[str, Dict[str, str]] = {}
        self.failing_disks = set()
        self.exports: List[DeltaExport] = []
        self.imports: List[Dict[str, Any]] = []
        self.deleted: List[str] = []
        self._ids = itertools.count(1)
        self._snapshot_times = itertools.count(1)

    def _new_id(self, prefix: str) -> str:
        return f"{self.name}-{prefix}-{next(self._ids)}"

    def _snapshot_time(self) -> datetime:
        return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(hours=next(self._snapshot_times))

    # Fixture builders

    def add_repository(self, name_label: str = "repo") -> Repository:
        repository = Repository(id=self._new_id("sr"), uuid=str(uuid_lib.uuid4()), name_label=name_label)
        self.objects[repository.id] = repository
        self.repository_vms[repository.id] = []
        return repository

    def add_vm(self, name_label: str, disks: int = 1, repository: Optional[Repository] = None) -> VirtualMachine:
        vm = VirtualMachine(id=self._new_id("vm"), uuid=str(uuid_lib.uuid4()), name_label=name_label)
        self.objects[vm.id] = vm
        if repository:
            self.repository_vms[repository.id].append(vm.id)

        for index in range(disks):
            disk = VirtualDisk(
                id=self._new_id("vdi"),
                uuid=str(uuid_lib.uuid4()),
                name_label=f"{name_label} disk {index}",
                virtual_size=1024,
            )
            self.objects[disk.id] = disk
            self._attach(disk.id, vm.id, {"position": str(index)})

        # A CD drive is never backed up
        cd = DiskAttachment(id=self._new_id("vbd"), vm_id=vm.id, disk_id=None, type="CD")
        self.objects[cd.id] = cd
        return vm

    def _attach(self, disk_id: str, vm_id: str, info: Dict[str, Any]) -> DiskAttachment:
        attachment = DiskAttachment(id=self._new_id("vbd"), vm_id=vm_id, disk_id=disk_id, info=dict(info))
        self.objects[attachment.id] = attachment
        return attachment

    def disks_of(self, vm: VirtualMachine) -> List[VirtualDisk]:
        return [self.objects[a.disk_id] for a in self.list_disk_attachments(vm) if a.disk_id]

    def vms(self) -> List[VirtualMachine]:
        return [o for o in self.objects.values() if isinstance(o, VirtualMachine)]

    # Object cache queries

    def _lookup(self, object_id: str) -> Optional[Any]:
        record = self.objects.get(object_id)
        if record is not None:
            return record
        return next((o for o in self.objects.values() if getattr(o, "uuid", None) == object_id), None)

    def list_snapshots(self, vm: VirtualMachine) -> List[VirtualMachine]:
        return [o for o in self.vms() if o.is_snapshot and o.snapshot_of == vm.id]

    def list_disk_snapshots(self, disk: VirtualDisk) -> List[VirtualDisk]:
        return [
            o for o in self.objects.values()
            if isinstance(o, VirtualDisk) and o.snapshot_of == disk.id
        ]

    def list_disk_attachments(self, vm: VirtualMachine) -> List[DiskAttachment]:
        return [
            o for o in self.objects.values()
            if isinstance(o, DiskAttachment) and o.vm_id == vm.id
        ]

    def list_repository_vms(self, repository: Repository) -> List[VirtualMachine]:
        return [self.objects[vm_id] for vm_id in self.repository_vms.get(repository.id, []) if vm_id in self.objects]

    # Export / import

    async def export_delta_vm(
        self,
        vm_id,
        base_vm_id=None,
        snapshot_name_label=None,
        full_disks_required=(),
        disable_base_tags=False
    ) -> DeltaExport:
        vm = self.get_object(vm_id)
        snapshot = VirtualMachine(
            id=self._new_id("vm"),
            uuid=str(uuid_lib.uuid4()),
            name_label=snapshot_name_label or vm.name_label,
            is_snapshot=True,
            snapshot_of=vm.id,
            snapshot_time=self._snapshot_time(),
        )
        self.objects[snapshot.id] = snapshot

        delta = DeltaExport(vm={"id": snapshot.id, "uuid": snapshot.uuid, "name_label": vm.name_label})
        for index, disk in enumerate(self.disks_of(vm)):
            key = f"vdi{index}"
            full = base_vm_id is None or disk.id in full_disks_required
            kind = "full" if full else "delta"
            delta.disks[key] = {
                "uuid": disk.uuid,
                "name_label": disk.name_label,
                "virtual_size": disk.virtual_size,
                "snapshot_of": disk.id,
            }
            delta.attachments[f"vbd{index}"] = {"disk": key, "position": str(index)}
            delta.streams[key] = FakeStream(
                [f"{kind}:{disk.uuid}:".encode(), f"{snapshot.snapshot_time.isoformat()}".encode()],
                fail=disk.id in self.failing_disks,
            )

        self.exports.append(delta)
        return delta

    async def import_delta_vm(self, delta, repository_id, delete_base=False, disable_start_after_import=True):
        contents = {}
        for key, streams in delta.streams.items():
            if not isinstance(streams, list):
                streams = [streams]
            contents[key] = [await read_stream(stream) for stream in streams]

        vm = VirtualMachine(
            id=self._new_id("vm"),
            uuid=str(uuid_lib.uuid4()),
            name_label=delta.vm.get("name_label", "imported"),
        )
        self.objects[vm.id] = vm
        self.repository_vms.setdefault(repository_id, []).append(vm.id)
        self.imports.append({
            "vm": vm,
            "delta": delta,
            "contents": contents,
            "delete_base": delete_base,
            "disable_start_after_import": disable_start_after_import,
        })
        return vm

    async def export_vm(self, vm_id, compress=False, only_metadata=False):
        vm = self.get_object(vm_id)
        return FakeStream([b"image:", vm.name_label.encode()])

    async def import_vm(self, stream, repository_id=None, only_metadata=False):
        content = await read_stream(stream)
        vm = VirtualMachine(
            id=self._new_id("vm"),
            uuid=str(uuid_lib.uuid4()),
            name_label=content.decode().split(":", 1)[-1],
        )
        self.objects[vm.id] = vm
        # Imported metadata still references the original VM's disks
        self._attach(self._new_id("stale-vdi"), vm.id, {})
        return vm

    async def create_disk(self, virtual_size, info, repository_id):
        disk = VirtualDisk(
            id=self._new_id("vdi"),
            uuid=str(uuid_lib.uuid4()),
            name_label=info.get("name_label", ""),
            virtual_size=virtual_size,
        )
        self.objects[disk.id] = disk
        self.disk_contents[disk.id] = []
        return disk

    async def import_disk_content(self, disk_id, stream, format):
        self.disk_contents[disk_id].append(await read_stream(stream))

    # Object lifecycle

    async def attach_disk(self, disk_id, vm_id, info):
        return self._attach(disk_id, vm_id, info)

    async def destroy_disk_attachments(self, vm_id):
        for attachment in [o for o in self.objects.values() if isinstance(o, DiskAttachment) and o.vm_id == vm_id]:
            del self.objects[attachment.id]

    async def delete_disk(self, disk_id):
        if disk_id not in self.objects:
            raise HypervisorError(f"No such disk {disk_id}")
        del self.objects[disk_id]
        self.deleted.append(disk_id)

    async def delete_vm(self, vm_id, delete_disks=True):
        if vm_id not in self.objects:
            raise HypervisorError(f"No such VM {vm_id}")
        del self.objects[vm_id]
        self.deleted.append(vm_id)

    async def snapshot_vm(self, vm_id, name_label):
        vm = self.get_object(vm_id)
        snapshot = VirtualMachine(
            id=self._new_id("vm"),
            uuid=str(uuid_lib.uuid4()),
            name_label=name_label,
            is_snapshot=True,
            snapshot_of=vm.id,
            snapshot_time=self._snapshot_time(),
        )
        self.objects[snapshot.id] = snapshot
        return snapshot

    async def remote_copy_vm(self, vm_id, target, repository_id, name_label):
        source = self.get_object(vm_id)
        copy = VirtualMachine(
            id=target._new_id("vm"),
            uuid=str(uuid_lib.uuid4()),
            name_label=name_label,
            other_config={"copy_of": source.uuid},
        )
        target.objects[copy.id] = copy
        target.repository_vms.setdefault(repository_id, []).append(copy.id)
        return copy

    # Properties

    async def add_tag(self, object_id, tag):
        self.get_object(object_id).tags.append(tag)

    async def set_properties(self, object_id, **properties):
        record = self.get_object(object_id)
        for name, value in properties.items():
            setattr(record, name, value)

    async def update_other_config(self, object_id, entries):
        other_config = self.get_object(object_id).other_config
        for key, value in entries.items():
            if value is None:
                other_config.pop(key, None)
            else:
                other_config[key] = value

    async def add_forbidden_operation(self, vm_id, operation, reason):
        self.forbidden.setdefault(vm_id, {})[operation] = reason

    async def remove_forbidden_operation(self, vm_id, operation):
        self.forbidden.get(vm_id, {}).pop(operation, None)


class ConcatMerge:
    """Merge primitive folding a child into its parent by appending bytes."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[tuple] = []

    async def __call__(self, parent_storage, parent_path, child_storage, child_path):
        self.calls.append((parent_path, child_path))
        if self.fail:
            raise RuntimeError(f"cannot merge {child_path}")
        parent = await parent_storage.read_file(parent_path)
        child = await child_storage.read_file(child_path)
        await parent_storage.output_file(parent_path, parent + b"|" + child)


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    """Local storage rooted in a temporary directory."""
    return LocalStorage({"base_path": str(tmp_path / "remote")})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def merge() -> ConcatMerge:
    return ConcatMerge()


@pytest.fixture
def hypervisor_factory():
    """Build additional in-memory pools."""
    return FakeHypervisor


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def remotes(storage) -> RemoteRegistry:
    registry = RemoteRegistry()
    registry.add(
        Remote(id="nfs", name="NFS", type=StorageType.LOCAL, config={"base_path": str(storage.base_path)}),
        storage,
    )
    registry.add(
        Remote(id="offline", name="Offline", type=StorageType.LOCAL,
               config={"base_path": str(storage.base_path)}, enabled=False),
        storage,
    )
    return registry


@pytest.fixture
def job_logs() -> List[tuple]:
    return []


@pytest.fixture
def service(hypervisor, remotes, merge, clock, job_logs) -> BackupService:
    return BackupService(
        hypervisor,
        remotes,
        merge=merge,
        clock=clock,
        log_callback=lambda level, message, details=None: job_logs.append((level, message, details)),
    )


@pytest.fixture
def failing_merge() -> ConcatMerge:
    return ConcatMerge(fail=True)
