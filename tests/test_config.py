"""Tests for settings and log handlers."""

import logging

import pytest
from pydantic import ValidationError

from vmbackup.core.config import Settings
from vmbackup.core.logging_handler import (
    InMemoryLogHandler,
    get_log_handler,
    setup_file_logging,
    setup_logging,
)


class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.DISK_IMAGE_EXT == "qcow2"
        assert settings.VM_IMAGE_EXT == "tar"
        assert settings.CHECKSUM_ALGORITHM == "sha256"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DISK_IMAGE_EXT", ".vhd")
        monkeypatch.setenv("log_level", "debug")

        settings = Settings(_env_file=None)

        assert settings.DISK_IMAGE_EXT == "vhd"
        assert settings.LOG_LEVEL == "DEBUG"

    def test_unknown_log_level(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, LOG_LEVEL="chatty")


class TestInMemoryLogHandler:

    @pytest.fixture
    def handler(self):
        handler = InMemoryLogHandler(max_records=3)
        handler.setFormatter(logging.Formatter("%(message)s"))
        return handler

    def _emit(self, handler, level, message, name="vmbackup.services.delta", details=None):
        record = logging.LogRecord(name, level, __file__, 1, message, None, None)
        if details is not None:
            record.details = details
        handler.emit(record)

    def test_keeps_newest_records(self, handler):
        for index in range(5):
            self._emit(handler, logging.INFO, f"message {index}")

        logs = handler.get_logs()
        assert [log["message"] for log in logs] == ["message 4", "message 3", "message 2"]

    def test_filters(self, handler):
        self._emit(handler, logging.INFO, "merge done", name="vmbackup.services.chain.merge")
        self._emit(handler, logging.ERROR, "merge failed", name="vmbackup.services.chain.merge")
        self._emit(handler, logging.INFO, "pruned", name="vmbackup.services.retention.policy")

        assert [log["message"] for log in handler.get_logs(level="error")] == ["merge failed"]
        assert len(handler.get_logs(logger="chain")) == 2
        assert [log["message"] for log in handler.get_logs(search="PRUNED")] == ["pruned"]

    def test_stats_and_clear(self, handler):
        self._emit(handler, logging.WARNING, "orphans")
        self._emit(handler, logging.ERROR, "boom")

        stats = handler.get_stats()
        assert stats["total"] == 2
        assert stats["by_level"]["INFO"] == 0
        assert stats["by_level"]["WARNING"] == 1
        assert stats["by_level"]["ERROR"] == 1

        handler.clear()
        assert handler.get_logs() == []


def test_file_logging_disabled_without_directory(monkeypatch):
    from vmbackup.core import config

    monkeypatch.setattr(config.settings, "LOG_DIR", None)

    assert setup_file_logging() is False


class TestJobDetails:

    async def test_job_log_details_are_kept(self, service, hypervisor):
        handler = setup_logging("INFO")
        handler.clear()
        vm = hypervisor.add_vm("web")

        try:
            await service.rolling_delta_backup(vm.id, "nfs", "daily", 2)
            await service.close()
        finally:
            package_logger = logging.getLogger("vmbackup")
            package_logger.removeHandler(handler)
            package_logger.setLevel(logging.NOTSET)

        completed = handler.get_logs(operation="delta_backup_complete")
        assert len(completed) == 1
        assert completed[0]["details"]["path"].startswith("vm_delta_daily_")
        assert handler.get_stats()["by_operation"]["delta_backup_start"] == 1
        assert get_log_handler() is handler
