from vmbackup.services.chain.catalog import ChainCatalog
from vmbackup.services.chain.merge import ChainMerger, check_file_integrity
from vmbackup.services.chain.qemu import MergePrimitive, QemuImgMerge

__all__ = [
    "ChainCatalog",
    "ChainMerger",
    "check_file_integrity",
    "MergePrimitive",
    "QemuImgMerge",
]
