"""Shared configuration utilities."""

import os
from typing import Optional


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_database_url() -> str:
    """Get the local durable store database URL from environment."""
    return get_env(
        "DATABASE_URL",
        "sqlite:///./clinical_sync.db",
        required=False
    )


def get_storage_namespace() -> str:
    """Get the application namespace all local entries are keyed under."""
    return get_env("STORAGE_NAMESPACE", "ayekta-emr")


def get_drive_config() -> dict:
    """Get Google Drive configuration from environment."""
    return {
        "api_base_url": get_env("DRIVE_API_BASE_URL", "https://www.googleapis.com"),
        "folder_name": get_env("DRIVE_FOLDER_NAME", "Ayekta EMR Data"),
        "file_prefix": get_env("DRIVE_FILE_PREFIX", ""),
        "timeout": float(get_env("DRIVE_TIMEOUT_SECONDS", "60")),
        "revoke_url": get_env("DRIVE_REVOKE_URL", "https://oauth2.googleapis.com/revoke"),
    }


def get_sync_config() -> dict:
    """Get sync engine configuration from environment."""
    return {
        "max_retry_attempts": int(get_env("SYNC_MAX_RETRY_ATTEMPTS", "3")),
        "autosave_delay": float(get_env("AUTOSAVE_DELAY_SECONDS", "2.0")),
        "probe_host": get_env("CONNECTIVITY_PROBE_HOST", ""),
        "probe_port": int(get_env("CONNECTIVITY_PROBE_PORT", "443")),
        "check_interval": float(get_env("CONNECTIVITY_CHECK_INTERVAL", "30")),
        "probe_timeout": float(get_env("CONNECTIVITY_PROBE_TIMEOUT", "5")),
    }
