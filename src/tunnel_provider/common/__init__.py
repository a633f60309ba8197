"""Common utilities and shared functionality."""

from .exceptions import (
    ConfigError,
    DecodeError,
    EngineError,
    LifecycleError,
    NoPodsFoundError,
    PortAllocationError,
    PreflightError,
    ProcessError,
    SessionError,
    TunnelCloseError,
    TunnelProviderError,
    TunnelRegistryError,
    TunnelStartError,
    WatchdogFailure,
)
from .logging import bind_tunnel_context, get_logger, setup_logging
from .ports import allocate_port, allocate_ports
from .settings import (
    TUNNEL_CONF_ENV,
    TUNNEL_TYPE_ENV,
    CleanupStrategy,
    LaunchSettings,
)
from .utils import (
    is_secret_field,
    redact,
    safe_filename_part,
    sanitize_log_data,
    validate_non_empty_string,
)
from .watchdog import ProcessWatchdog, check_healthy, interrupt, is_alive

__all__ = [
    # Exceptions
    "TunnelProviderError",
    "ConfigError",
    "PreflightError",
    "NoPodsFoundError",
    "TunnelStartError",
    "WatchdogFailure",
    "DecodeError",
    "ProcessError",
    "PortAllocationError",
    "LifecycleError",
    "EngineError",
    "TunnelCloseError",
    "SessionError",
    "TunnelRegistryError",
    # Logging
    "bind_tunnel_context",
    "get_logger",
    "setup_logging",
    # Settings
    "LaunchSettings",
    "CleanupStrategy",
    "TUNNEL_TYPE_ENV",
    "TUNNEL_CONF_ENV",
    # Processes and ports
    "ProcessWatchdog",
    "check_healthy",
    "interrupt",
    "is_alive",
    "allocate_port",
    "allocate_ports",
    # Utils
    "validate_non_empty_string",
    "is_secret_field",
    "redact",
    "sanitize_log_data",
    "safe_filename_part",
]
