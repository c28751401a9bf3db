"""Tests for the qemu-img merge primitive's failure handling."""

import shutil

import pytest

from vmbackup.services.chain import QemuImgMerge
from vmbackup.services.errors import ChainMergeError


class RemoteOnlyStorage:
    """Stands in for a non-filesystem backend."""


async def test_requires_local_storage(storage):
    merge = QemuImgMerge()

    with pytest.raises(ChainMergeError, match="local storage"):
        await merge(RemoteOnlyStorage(), "a_full.qcow2", storage, "b_delta.qcow2")


async def test_missing_binary(storage):
    merge = QemuImgMerge(qemu_img="/nonexistent/qemu-img")

    with pytest.raises(ChainMergeError) as excinfo:
        await merge(storage, "d/a_full.qcow2", storage, "d/b_delta.qcow2")

    assert excinfo.value.parent == "d/a_full.qcow2"
    assert excinfo.value.child == "d/b_delta.qcow2"


@pytest.mark.skipif(shutil.which("false") is None, reason="needs the false utility")
async def test_nonzero_exit(storage):
    merge = QemuImgMerge(qemu_img=shutil.which("false"))

    with pytest.raises(ChainMergeError, match="rebase failed"):
        await merge(storage, "d/a_full.qcow2", storage, "d/b_delta.qcow2")
