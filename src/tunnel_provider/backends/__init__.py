"""Tunnel backends: one per transport."""

from ..common.settings import LaunchSettings
from ..tunnels.interfaces import TunnelBackend
from ..tunnels.models import TunnelType
from .k8s import KubernetesBackend
from .ssh import SSHBackend
from .ssm import SSMBackend

BACKENDS: dict[TunnelType, type[TunnelBackend]] = {
    TunnelType.SSH: SSHBackend,
    TunnelType.SSM: SSMBackend,
    TunnelType.KUBERNETES: KubernetesBackend,
}


def get_backend(
    tunnel_type: TunnelType | str, settings: LaunchSettings | None = None
) -> TunnelBackend:
    """Create the backend for a tunnel type.

    Raises:
        ValueError: If the tunnel type is unknown
    """
    return BACKENDS[TunnelType(tunnel_type)](settings)


__all__ = [
    "BACKENDS",
    "get_backend",
    "SSHBackend",
    "SSMBackend",
    "KubernetesBackend",
]
