"""High-level API for tunnel provider.

This module provides simple functions that open a tunnel in a detached worker
and return its handle. The tunnel stays up until it is closed or until the
watched parent process exits.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .common.exceptions import ConfigError, TunnelCloseError
from .common.logging import get_logger
from .common.settings import LaunchSettings
from .tunnels.manager import TunnelManager
from .tunnels.models import (
    ClusterAccess,
    KubernetesTunnelConfig,
    SSHTunnelConfig,
    SSMTunnelConfig,
    TunnelConfig,
    TunnelHandle,
)

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def build_config(model: type[ModelT], **values: Any) -> ModelT:
    """Validate keyword arguments into a config model.

    Raises:
        ConfigError: If the values do not form a valid configuration
    """
    try:
        return model(**values)
    except ValidationError as e:
        raise ConfigError(f"invalid {model.__name__}: {e}") from e


def open_tunnel(
    config: TunnelConfig,
    *,
    settings: LaunchSettings | None = None,
    parent_pid: int | None = None,
) -> TunnelHandle:
    """Open a tunnel from a ready configuration.

    Args:
        config: Tunnel configuration
        settings: Launch settings, defaults to ``TUNNEL_PROVIDER_*`` overrides
        parent_pid: Process whose exit closes the tunnel, defaults to ours

    Returns:
        TunnelHandle: local address, worker pid and close values
    """
    manager = TunnelManager(settings or LaunchSettings.from_env())
    return manager.open(config, parent_pid=parent_pid)


def open_ssh_tunnel(
    ssh_host: str,
    target_host: str,
    target_port: int,
    *,
    ssh_port: int = 22,
    ssh_user: str | None = None,
    ssh_password: str | None = None,
    ssh_key: str | None = None,
    ssh_key_passphrase: str | None = None,
    local_host: str = "localhost",
    local_port: int = 0,
    settings: LaunchSettings | None = None,
    parent_pid: int | None = None,
) -> TunnelHandle:
    """Open a tunnel through an SSH bastion.

    Example:
        >>> handle = open_ssh_tunnel(
        ...     "bastion.example.com", "db.internal", 5432, ssh_key=key_path
        ... )
        >>> host, port, pid = handle.as_result()
    """
    config = build_config(
        SSHTunnelConfig,
        ssh_host=ssh_host,
        ssh_port=ssh_port,
        ssh_user=ssh_user,
        ssh_password=ssh_password,
        ssh_key=ssh_key,
        ssh_key_passphrase=ssh_key_passphrase,
        target_host=target_host,
        target_port=target_port,
        local_host=local_host,
        local_port=local_port,
    )
    return open_tunnel(config, settings=settings, parent_pid=parent_pid)


def open_ssm_tunnel(
    ssm_instance: str,
    ssm_region: str,
    target_host: str,
    target_port: int,
    *,
    ssm_profile: str | None = None,
    ssm_role_arn: str | None = None,
    local_port: int = 0,
    settings: LaunchSettings | None = None,
    parent_pid: int | None = None,
) -> TunnelHandle:
    """Open a tunnel through AWS Systems Manager Session Manager.

    The returned handle carries ``session_id`` and ``region``; both are needed
    to terminate the remote session at close time.
    """
    config = build_config(
        SSMTunnelConfig,
        ssm_instance=ssm_instance,
        ssm_region=ssm_region,
        ssm_profile=ssm_profile,
        ssm_role_arn=ssm_role_arn,
        target_host=target_host,
        target_port=target_port,
        local_port=local_port,
    )
    return open_tunnel(config, settings=settings, parent_pid=parent_pid)


def open_kubernetes_tunnel(
    namespace: str,
    service_name: str,
    target_port: int,
    *,
    kubernetes: ClusterAccess | dict[str, Any] | None = None,
    local_host: str = "localhost",
    local_port: int = 0,
    settings: LaunchSettings | None = None,
    parent_pid: int | None = None,
) -> TunnelHandle:
    """Open a port forward to the first pod behind a Kubernetes service."""
    config = build_config(
        KubernetesTunnelConfig,
        namespace=namespace,
        service_name=service_name,
        target_port=target_port,
        kubernetes=kubernetes,
        local_host=local_host,
        local_port=local_port,
    )
    return open_tunnel(config, settings=settings, parent_pid=parent_pid)


@contextmanager
def managed_tunnel(
    config: TunnelConfig,
    *,
    settings: LaunchSettings | None = None,
) -> Iterator[TunnelHandle]:
    """Open a tunnel and close it when the context exits.

    Example:
        >>> config = SSHTunnelConfig(
        ...     ssh_host="bastion", target_host="db", target_port=5432, ssh_key=key
        ... )
        >>> with managed_tunnel(config) as handle:
        ...     connect(handle.local_host, handle.local_port)
    """
    with TunnelManager(settings or LaunchSettings.from_env()) as manager:
        handle = manager.open(config)
        logger.info("Managed tunnel opened", endpoint=handle.endpoint, pid=handle.pid)
        try:
            yield handle
        finally:
            try:
                manager.close(handle)
            except TunnelCloseError as e:
                logger.error("Managed tunnel close failed", error=str(e))
                raise
            logger.info("Managed tunnel closed", endpoint=handle.endpoint)
