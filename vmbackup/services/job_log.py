"""
Job log forwarding shared by the backup services.
"""
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

LogCallback = Callable[[str, str, Optional[dict]], None]


class JobLogMixin:
    """
    Adds `_log`, which writes to the service's module logger and forwards
    to an optional callback so a worker can capture per-job logs.

    Callback signature: callback(level: str, message: str, details: dict = None)
    """

    log_callback: Optional[LogCallback] = None
    logger: logging.Logger = logger

    def _log(self, level: str, message: str, details: dict = None):
        log_method = getattr(self.logger, level.lower(), self.logger.info)
        log_method(message, extra={"details": details or {}})

        if self.log_callback:
            try:
                self.log_callback(level, message, details)
            except Exception as e:
                logger.warning(f"Log callback failed: {e}")
