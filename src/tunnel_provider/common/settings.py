"""Launch settings shared by the front end and tunnel workers."""

import os
import tempfile
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .logging import LOG_LEVELS

# Process boundary protocol
TUNNEL_TYPE_ENV: Final = "TUNNEL_PROVIDER_TYPE"
TUNNEL_CONF_ENV: Final = "TUNNEL_PROVIDER_CONF"
WORKER_MODULE: Final = "tunnel_provider"

SETTINGS_ENV_PREFIX: Final = "TUNNEL_PROVIDER_"


class CleanupStrategy(str, Enum):
    """How a worker process is stopped at close time"""

    GRACEFUL = "graceful"  # Interrupt and wait, never kill
    FORCE = "force"  # Kill immediately
    GRACEFUL_THEN_FORCE = "graceful_then_force"  # Interrupt, kill after timeout


class LaunchSettings(BaseModel):
    """Pydantic configuration for tunnel launching and supervision"""

    model_config = ConfigDict(
        str_strip_whitespace=True, validate_assignment=True, extra="forbid"
    )

    watchdog_interval: float = Field(
        default=2.0, ge=0.1, le=60.0, description="Parent liveness poll interval"
    )
    ssh_grace_period: float = Field(
        default=5.0, ge=0.1, le=60.0, description="Startup grace window for SSH"
    )
    ssm_grace_period: float = Field(
        default=5.0, ge=0.1, le=60.0, description="Startup grace window for SSM"
    )
    kubernetes_grace_period: float = Field(
        default=2.0,
        ge=0.1,
        le=60.0,
        description="Startup grace window for Kubernetes",
    )
    self_test_timeout: float = Field(
        default=2.0, ge=0.1, le=30.0, description="Local dial self-test timeout"
    )
    shutdown_timeout: float = Field(
        default=5.0, ge=0.1, le=120.0, description="Graceful shutdown timeout"
    )
    cleanup_strategy: CleanupStrategy = Field(default=CleanupStrategy.GRACEFUL)

    log_dir: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()),
        description="Directory holding per-tunnel log files",
    )
    log_level: str = Field(default="INFO", description="Worker log level")
    json_logs: bool = Field(default=False, description="Render worker logs as JSON")

    max_tunnels: int = Field(
        default=32, ge=1, le=1024, description="Maximum tunnels per manager"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name"""
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of {', '.join(LOG_LEVELS)}")
        return level

    def grace_period_for(self, tunnel_type: str) -> float:
        """Return the startup grace window for a backend type"""
        value: float = getattr(self, f"{tunnel_type}_grace_period")
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "LaunchSettings":
        """Build settings from ``TUNNEL_PROVIDER_<FIELD>`` environment variables"""
        environ = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for name in cls.model_fields:
            value = environ.get(f"{SETTINGS_ENV_PREFIX}{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls.model_validate(overrides)
