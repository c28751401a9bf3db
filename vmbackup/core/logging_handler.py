"""
Log handlers for backup jobs: a bounded in-memory buffer that keeps the
structured job details attached by the services, and a rotating log file.

Services log through module loggers under the `vmbackup` package logger;
records emitted by `JobLogMixin._log` carry a `details` dict (operation name,
paths, disks) which the buffer keeps alongside the message.
"""
import logging
from collections import Counter, deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

PACKAGE_LOGGER = "vmbackup"
LOG_FILENAME = "vmbackup.log"

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class InMemoryLogHandler(logging.Handler):
    """
    Keeps the newest `max_records` log entries of backup jobs.

    Thread-safe; S3 transfers log from executor threads.
    """

    def __init__(self, max_records: int = 1000):
        super().__init__()
        self.max_records = max_records
        self.records: Deque[Dict[str, Any]] = deque(maxlen=max_records)
        self.lock = Lock()

    def emit(self, record: logging.LogRecord):
        try:
            details = getattr(record, "details", None) or {}
            entry = {
                "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
                "operation": details.get("operation"),
                "details": details,
            }

            if record.exc_info:
                formatter = self.formatter or logging.Formatter()
                entry["exception"] = formatter.formatException(record.exc_info)

            with self.lock:
                self.records.append(entry)

        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        level: Optional[str] = None,
        logger: Optional[str] = None,
        operation: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Get log entries, newest first.

        Args:
            level: Exact level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            logger: Substring of the logger name, e.g. "chain"
            operation: Job operation recorded in the details, e.g. "merge_failed"
            search: Case-insensitive substring of the message
            limit: Maximum number of entries
            offset: Entries to skip from the newest end
        """
        with self.lock:
            logs = list(self.records)

        def matches(entry: Dict[str, Any]) -> bool:
            if level and entry["level"] != level.upper():
                return False
            if logger and logger.lower() not in entry["logger"].lower():
                return False
            if operation and entry["operation"] != operation:
                return False
            if search and search.lower() not in entry["message"].lower():
                return False
            return True

        selected = [entry for entry in reversed(logs) if matches(entry)]
        return selected[offset:offset + limit]

    def get_stats(self) -> Dict[str, Any]:
        """Entry counts per level and per job operation."""
        with self.lock:
            logs = list(self.records)

        by_level = dict.fromkeys(LEVELS, 0)
        by_level.update(Counter(entry["level"] for entry in logs if entry["level"] in by_level))

        return {
            "total": len(logs),
            "max_records": self.max_records,
            "by_level": by_level,
            "by_operation": dict(Counter(entry["operation"] for entry in logs if entry["operation"])),
        }

    def clear(self):
        with self.lock:
            self.records.clear()


_log_handler: Optional[InMemoryLogHandler] = None
_file_log_handler: Optional[RotatingFileHandler] = None


def get_log_handler() -> InMemoryLogHandler:
    """Process-wide in-memory handler."""
    global _log_handler
    if _log_handler is None:
        _log_handler = InMemoryLogHandler(max_records=2000)
        _log_handler.setFormatter(logging.Formatter("%(message)s"))
    return _log_handler


def _attach(handler: logging.Handler, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(PACKAGE_LOGGER)
    if handler not in logger.handlers:
        logger.addHandler(handler)
    if level:
        logger.setLevel(level)
    return logger


def setup_logging(level: Optional[str] = None) -> InMemoryLogHandler:
    """
    Attach the in-memory handler to the package logger.

    The root logger is left to the embedding application.
    """
    from vmbackup.core.config import settings

    log_handler = get_log_handler()
    _attach(log_handler, level or settings.LOG_LEVEL)
    return log_handler


def get_file_log_handler(
    log_dir: str,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 10
) -> RotatingFileHandler:
    """Process-wide rotating handler writing `<log_dir>/vmbackup.log`."""
    global _file_log_handler
    if _file_log_handler is None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        _file_log_handler = RotatingFileHandler(
            filename=str(log_path / LOG_FILENAME),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8"
        )
        _file_log_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))

    return _file_log_handler


def setup_file_logging(
    log_dir: Optional[str] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None
) -> bool:
    """Enable rotating file logs. Returns False when no log directory is configured."""
    from vmbackup.core.config import settings

    log_dir = log_dir or settings.LOG_DIR
    if not log_dir:
        return False

    file_handler = get_file_log_handler(
        log_dir,
        max_bytes if max_bytes is not None else settings.LOG_MAX_BYTES,
        backup_count if backup_count is not None else settings.LOG_BACKUP_COUNT
    )

    logger = _attach(file_handler)
    if logger.level == logging.NOTSET:
        logger.setLevel(settings.LOG_LEVEL)

    logging.getLogger(__name__).info(f"File logging enabled in {log_dir}")
    return True
