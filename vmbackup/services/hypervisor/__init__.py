from vmbackup.services.hypervisor.base import (
    HypervisorConnection,
    HypervisorError,
    HypervisorObjectNotFound
)

__all__ = ["HypervisorConnection", "HypervisorError", "HypervisorObjectNotFound"]
