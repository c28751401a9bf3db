"""
Remote registry: configured backup targets and their storage handlers.
"""
import logging
from typing import Dict, Union

from vmbackup.models.remote import Remote
from vmbackup.services.errors import RemoteUnavailableError
from vmbackup.services.storage import StorageBackend, create_storage_backend

logger = logging.getLogger(__name__)


class RemoteRegistry:
    """Keeps remotes by id and lazily creates one storage handler per remote."""

    def __init__(self):
        self._remotes: Dict[str, Remote] = {}
        self._handlers: Dict[str, StorageBackend] = {}

    def add(self, remote: Remote, handler: StorageBackend = None) -> Remote:
        """
        Register a remote, optionally with a ready-made handler.

        Replacing a remote drops its cached handler.
        """
        self._remotes[remote.id] = remote
        self._handlers.pop(remote.id, None)
        if handler is not None:
            self._handlers[remote.id] = handler
        return remote

    def get_remote(self, remote_id: str) -> Remote:
        remote = self._remotes.get(remote_id)
        if remote is None:
            raise RemoteUnavailableError(f"No such remote {remote_id}")
        return remote

    def require_enabled(self, remote_id: str) -> Remote:
        """Return the remote, refusing missing or disabled ones."""
        remote = self.get_remote(remote_id)
        if not remote.enabled:
            raise RemoteUnavailableError(f"Remote {remote_id} is disabled")
        return remote

    def get_handler(self, remote: Union[Remote, str]) -> StorageBackend:
        if isinstance(remote, str):
            remote = self.get_remote(remote)

        handler = self._handlers.get(remote.id)
        if handler is None:
            handler = create_storage_backend(remote.type, remote.config)
            self._handlers[remote.id] = handler
            logger.debug(f"Created {remote.type.value} handler for remote {remote.name}")
        return handler
