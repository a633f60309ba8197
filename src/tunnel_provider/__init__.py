"""tunnel-provider - local TCP tunnels through SSH, AWS SSM and Kubernetes."""

__version__ = "0.1.0"

# High-level API
from .api import (
    managed_tunnel,
    open_kubernetes_tunnel,
    open_ssh_tunnel,
    open_ssm_tunnel,
    open_tunnel,
)

# Common utilities
from .common.exceptions import (
    ConfigError,
    NoPodsFoundError,
    PreflightError,
    TunnelCloseError,
    TunnelProviderError,
    TunnelStartError,
)
from .common.logging import get_logger, setup_logging
from .common.settings import CleanupStrategy, LaunchSettings

# Tunnel management
from .tunnels import (
    ClusterAccess,
    ExecConfig,
    KubernetesTunnelConfig,
    SSHTunnelConfig,
    SSMTunnelConfig,
    TunnelConfig,
    TunnelHandle,
    TunnelManager,
    TunnelState,
    TunnelType,
    close_tunnel,
)

__all__ = [
    # High-level API
    "open_tunnel",
    "open_ssh_tunnel",
    "open_ssm_tunnel",
    "open_kubernetes_tunnel",
    "close_tunnel",
    "managed_tunnel",
    # Tunnel management
    "TunnelManager",
    "TunnelConfig",
    "SSHTunnelConfig",
    "SSMTunnelConfig",
    "KubernetesTunnelConfig",
    "ClusterAccess",
    "ExecConfig",
    "TunnelHandle",
    "TunnelState",
    "TunnelType",
    # Settings
    "LaunchSettings",
    "CleanupStrategy",
    # Exceptions
    "TunnelProviderError",
    "ConfigError",
    "PreflightError",
    "NoPodsFoundError",
    "TunnelStartError",
    "TunnelCloseError",
    # Logging
    "get_logger",
    "setup_logging",
]
