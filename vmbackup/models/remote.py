"""
Remote (backup target) models.
"""
import enum
from dataclasses import dataclass, field
from typing import Dict, Any


class StorageType(str, enum.Enum):
    """Storage backend types."""
    LOCAL = "local"
    S3 = "s3"


@dataclass
class Remote:
    """A configured backup target."""
    id: str
    name: str
    type: StorageType
    config: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
