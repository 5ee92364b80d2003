"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast). The control-plane endpoint
is required outside of TESTING mode.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    print(settings.vcloud.endpoint)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings


def _is_testing() -> bool:
    """Check if running in test mode."""
    return os.getenv("TESTING", "").lower() in ("true", "1")


# =============================================================================
# Nested Settings Groups
# =============================================================================


class VCloudSettings(BaseSettings):
    """Control-plane connection and credential configuration."""

    model_config = {"env_prefix": "VCLOUD_", "extra": "ignore"}

    endpoint: str = ""
    api_version: str = "5.1"
    username: str = ""
    org: str = ""
    password: SecretStr = SecretStr("")

    # Self-signed certificates are the norm on lab installs
    verify_ssl: bool = False
    request_timeout: int = 30

    @field_validator("endpoint")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class PollingSettings(BaseSettings):
    """Intervals and deadlines for every remote poll loop (seconds)."""

    model_config = {"env_prefix": "VCLOUD_", "extra": "ignore"}

    task_poll_interval: float = 5.0
    idle_poll_interval: float = 1.5
    unresolved_poll_interval: float = 5.0

    # 0 disables the deadline
    task_timeout: float = 3600.0
    idle_timeout: float = 3600.0

    delete_retry_delay: float = 5.0
    delete_max_attempts: int = 60


class ProductSettings(BaseSettings):
    """Compute shapes offered to callers."""

    model_config = {"env_prefix": "VCLOUD_PRODUCT_", "extra": "ignore"}

    ram_sizes_mb: List[int] = [512, 1024, 1536, 2048, 4096, 8192, 12288, 16384]
    cpu_counts: List[int] = [1, 2, 4, 8]
    disk_gb: int = 4


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Workflow job persistence (empty keeps jobs in memory only)
    state_file: str = ""
    job_history: int = 100

    # Nested groups (initialized separately to support env_prefix)
    vcloud: VCloudSettings = None  # type: ignore[assignment]
    polling: PollingSettings = None  # type: ignore[assignment]
    products: ProductSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("vcloud") is None:
            values["vcloud"] = VCloudSettings()
        if values.get("polling") is None:
            values["polling"] = PollingSettings()
        if values.get("products") is None:
            values["products"] = ProductSettings()
        return values

    @model_validator(mode="after")
    def _validate_endpoint(self):
        """Require VCLOUD_ENDPOINT in production; bypass only in TESTING mode."""
        if _is_testing():
            return self

        if not self.vcloud.endpoint:
            raise ValueError(
                "VCLOUD_ENDPOINT env var is required "
                "(e.g. https://vcd.example.com/api)"
            )

        return self

    @property
    def state_path(self) -> Optional[str]:
        return self.state_file or None


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
