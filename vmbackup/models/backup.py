"""
Backup file models.

Disk backups are named `<timestamp>_<full|delta>.<ext>` where the timestamp is
a compact UTC stamp (`YYYYMMDDTHHMMSSZ`), so lexicographic filename order is
chronological order.
"""
import enum
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from vmbackup.core.config import settings

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Format a datetime (default: now) as a filename-safe, sortable UTC stamp."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


class BackupKind(str, enum.Enum):
    """Kind of a disk backup file."""
    FULL = "full"
    DELTA = "delta"


def _filename_pattern(ext: str) -> "re.Pattern[str]":
    return re.compile(r"^(\d+T\d+Z)_(full|delta)\." + re.escape(ext) + "$")


@dataclass(frozen=True)
class BackupEntry:
    """One file of a disk backup chain."""
    timestamp: str
    kind: BackupKind
    ext: str = settings.DISK_IMAGE_EXT

    @property
    def filename(self) -> str:
        return f"{self.timestamp}_{self.kind.value}.{self.ext}"

    @property
    def is_full(self) -> bool:
        return self.kind == BackupKind.FULL

    @property
    def is_delta(self) -> bool:
        return self.kind == BackupKind.DELTA

    @classmethod
    def parse(cls, filename: str, ext: Optional[str] = None) -> Optional["BackupEntry"]:
        """Parse a backup filename; returns None for anything else."""
        ext = ext or settings.DISK_IMAGE_EXT
        match = _filename_pattern(ext).match(filename)
        if not match:
            return None
        return cls(timestamp=match.group(1), kind=BackupKind(match.group(2)), ext=ext)

    def __str__(self) -> str:
        return self.filename
