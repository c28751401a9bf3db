"""
Application configuration management using Pydantic Settings.
"""
from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "VM Backup"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None
    LOG_MAX_BYTES: int = 100 * 1024 * 1024  # 100 MB
    LOG_BACKUP_COUNT: int = 10

    # Storage
    STREAM_CHUNK_SIZE: int = 8192
    CHECKSUM_ALGORITHM: str = "sha256"
    STORAGE_EXECUTOR_WORKERS: int = 4

    # Backup file formats
    DISK_IMAGE_EXT: str = "qcow2"
    VM_IMAGE_EXT: str = "tar"

    # qemu-img (merge primitive)
    QEMU_IMG_PATH: str = "qemu-img"
    QEMU_IMG_TIMEOUT: int = 7200  # 2 hours

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def parse_log_level(cls, v):
        level = str(v).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("DISK_IMAGE_EXT", "VM_IMAGE_EXT", mode="before")
    @classmethod
    def strip_extension_dot(cls, v):
        return str(v).lstrip(".")


# Global settings instance
settings = Settings()
