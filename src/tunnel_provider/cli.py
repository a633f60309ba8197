"""tunnel-provider - CLI entry point."""

import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from pydantic import ValidationError

from . import __version__
from .api import build_config
from .common.exceptions import TunnelProviderError
from .common.logging import get_logger, setup_logging
from .common.settings import LaunchSettings
from .tunnels.codec import decode_config
from .tunnels.manager import TunnelManager, close_tunnel
from .tunnels.models import (
    ClusterAccess,
    KubernetesTunnelConfig,
    SSHTunnelConfig,
    SSMTunnelConfig,
    TunnelConfig,
    TunnelType,
)

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def _open_and_print(
    ctx: click.Context, config: TunnelConfig, parent_pid: int | None
) -> None:
    settings: LaunchSettings = ctx.obj
    # The CLI exits right after printing; the tunnel follows the invoking shell
    watched = parent_pid if parent_pid is not None else os.getppid()
    logger.debug("Tunnel will follow process", parent_pid=watched)
    try:
        handle = TunnelManager(settings).open(config, parent_pid=watched)
    except TunnelProviderError as e:
        raise click.ClickException(str(e)) from e
    click.echo(handle.model_dump_json(indent=2))


def _local_options(func: F) -> F:
    func = click.option(
        "--parent-pid",
        type=int,
        default=None,
        help="Process whose exit closes the tunnel (default: the calling shell)",
    )(func)
    func = click.option(
        "--local-port", type=int, default=0, show_default=True, help="0 allocates one"
    )(func)
    func = click.option("--target-port", type=int, required=True)(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="tunnel-provider")
@click.option(
    "--log-level",
    envvar="TUNNEL_PROVIDER_CLI_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="Log level of this command; workers use the settings level",
)
@click.option("--json-logs", is_flag=True, help="Render logs as JSON")
@click.pass_context
def cli(ctx: click.Context, log_level: str, json_logs: bool) -> None:
    """Open local TCP tunnels through SSH, AWS SSM or Kubernetes.

    Each tunnel runs in a detached worker process and prints its handle as
    JSON. Launch settings are read from TUNNEL_PROVIDER_* variables.
    """
    # stdout carries the handle; logs go to stderr
    setup_logging(level=log_level, json_format=json_logs, stream=sys.stderr)
    try:
        ctx.obj = LaunchSettings.from_env()
    except ValidationError as e:
        raise click.ClickException(f"invalid settings: {e}") from e


@cli.group("open")
def open_group() -> None:
    """Open a tunnel."""


@open_group.command("ssh")
@click.option("--ssh-host", required=True)
@click.option("--ssh-port", type=int, default=22, show_default=True)
@click.option("--ssh-user", default=None, help="Defaults to the current user")
@click.option("--ssh-password", envvar="TUNNEL_PROVIDER_SSH_PASSWORD", default=None)
@click.option("--ssh-key", default=None, help="Private key file or key material")
@click.option(
    "--ssh-key-passphrase", envvar="TUNNEL_PROVIDER_SSH_KEY_PASSPHRASE", default=None
)
@click.option("--target-host", required=True)
@click.option("--local-host", default="localhost", show_default=True)
@_local_options
@click.pass_context
def open_ssh(
    ctx: click.Context,
    ssh_host: str,
    ssh_port: int,
    ssh_user: str | None,
    ssh_password: str | None,
    ssh_key: str | None,
    ssh_key_passphrase: str | None,
    target_host: str,
    local_host: str,
    target_port: int,
    local_port: int,
    parent_pid: int | None,
) -> None:
    """Tunnel through an SSH bastion."""
    try:
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
    except TunnelProviderError as e:
        raise click.BadParameter(str(e)) from e
    _open_and_print(ctx, config, parent_pid)


@open_group.command("ssm")
@click.option("--instance", "ssm_instance", required=True)
@click.option("--region", "ssm_region", required=True)
@click.option("--profile", "ssm_profile", default=None)
@click.option("--role-arn", "ssm_role_arn", default=None)
@click.option("--target-host", required=True)
@_local_options
@click.pass_context
def open_ssm(
    ctx: click.Context,
    ssm_instance: str,
    ssm_region: str,
    ssm_profile: str | None,
    ssm_role_arn: str | None,
    target_host: str,
    target_port: int,
    local_port: int,
    parent_pid: int | None,
) -> None:
    """Tunnel through AWS Systems Manager Session Manager."""
    try:
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
    except TunnelProviderError as e:
        raise click.BadParameter(str(e)) from e
    _open_and_print(ctx, config, parent_pid)


@open_group.command("kubernetes")
@click.option("--namespace", required=True)
@click.option("--service", "service_name", required=True)
@click.option("--local-host", default="localhost", show_default=True)
@click.option(
    "--kubeconfig",
    "config_paths",
    multiple=True,
    type=click.Path(dir_okay=False),
    help="Kubeconfig file, repeatable",
)
@click.option("--context", "config_context", default=None)
@click.option("--host", default=None, help="API server URL")
@click.option("--token", envvar="TUNNEL_PROVIDER_KUBE_TOKEN", default=None)
@click.option("--insecure", is_flag=True, default=False)
@_local_options
@click.pass_context
def open_kubernetes(
    ctx: click.Context,
    namespace: str,
    service_name: str,
    local_host: str,
    config_paths: tuple[str, ...],
    config_context: str | None,
    host: str | None,
    token: str | None,
    insecure: bool,
    target_port: int,
    local_port: int,
    parent_pid: int | None,
) -> None:
    """Port forward to the first pod behind a service."""
    try:
        access = build_config(
            ClusterAccess,
            config_paths=list(config_paths) or None,
            config_context=config_context,
            host=host,
            token=token,
            insecure=insecure or None,
        )
        config = build_config(
            KubernetesTunnelConfig,
            namespace=namespace,
            service_name=service_name,
            target_port=target_port,
            local_host=local_host,
            local_port=local_port,
            kubernetes=access,
        )
    except TunnelProviderError as e:
        raise click.BadParameter(str(e)) from e
    _open_and_print(ctx, config, parent_pid)


@cli.command("open-json")
@click.argument("config_file", type=click.Path(exists=True, path_type=Path))
@click.option("--parent-pid", type=int, default=None)
@click.pass_context
def open_json(ctx: click.Context, config_file: Path, parent_pid: int | None) -> None:
    """Open any tunnel from a JSON configuration file."""
    try:
        config = decode_config(config_file.read_text())
    except TunnelProviderError as e:
        raise click.BadParameter(str(e), param_hint="CONFIG_FILE") from e
    _open_and_print(ctx, config, parent_pid)


@cli.command("close")
@click.option("--pid", type=int, required=True, help="Worker process ID")
@click.option(
    "--tunnel-type",
    type=click.Choice([t.value for t in TunnelType]),
    default=TunnelType.SSH.value,
    show_default=True,
)
@click.option("--session-id", default=None, help="SSM session to terminate")
@click.option("--region", default=None, help="Region of the SSM session")
@click.option("--profile", "ssm_profile", default=None)
@click.option("--role-arn", "ssm_role_arn", default=None)
@click.pass_context
def close(
    ctx: click.Context,
    pid: int,
    tunnel_type: str,
    session_id: str | None,
    region: str | None,
    ssm_profile: str | None,
    ssm_role_arn: str | None,
) -> None:
    """Close a tunnel opened earlier."""
    try:
        close_tunnel(
            pid,
            tunnel_type=tunnel_type,
            session_id=session_id,
            region=region,
            ssm_profile=ssm_profile,
            ssm_role_arn=ssm_role_arn,
            settings=ctx.obj,
        )
    except TunnelProviderError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Closed tunnel {pid}")


def main() -> None:
    """Main entry point."""
    cli(prog_name="tunnel-provider")


if __name__ == "__main__":
    main()
