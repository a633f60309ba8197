"""Tunnel manager: the front end that opens and closes tunnels."""

import uuid
from types import TracebackType
from typing import Literal

from ..backends import get_backend
from ..common.exceptions import (
    ProcessError,
    TunnelCloseError,
    TunnelProviderError,
    TunnelRegistryError,
)
from ..common.logging import get_logger
from ..common.ports import allocate_port
from ..common.settings import CleanupStrategy, LaunchSettings
from ..common.utils import sanitize_log_data
from .interfaces import TunnelBackend
from .launcher import ProcessLauncher, WorkerProcess, stop_worker
from .models import (
    LaunchDescriptor,
    TunnelConfig,
    TunnelHandle,
    TunnelRef,
    TunnelState,
    TunnelType,
)
from .registry import TunnelRegistry

logger = get_logger(__name__)


def _shutdown(
    ref: TunnelRef,
    backend: TunnelBackend,
    settings: LaunchSettings,
    worker: WorkerProcess | None = None,
) -> None:
    """Stop the worker and release remote resources, attempting both.

    Raises:
        TunnelCloseError: If any step failed, after all steps were tried
    """
    errors: list[str] = []

    try:
        if worker is not None:
            worker.stop(settings.cleanup_strategy, settings.shutdown_timeout)
        else:
            stop_worker(ref.pid, settings.cleanup_strategy, settings.shutdown_timeout)
    except ProcessError as e:
        errors.append(f"failed to stop tunnel process {ref.pid}: {e}")

    try:
        backend.teardown(ref)
    except TunnelProviderError as e:
        errors.append(f"failed to tear down {ref.tunnel_type.value} tunnel: {e}")

    if errors:
        raise TunnelCloseError(errors)


def close_tunnel(
    pid: int,
    tunnel_type: TunnelType | str = TunnelType.SSH,
    session_id: str | None = None,
    region: str | None = None,
    ssm_profile: str | None = None,
    ssm_role_arn: str | None = None,
    settings: LaunchSettings | None = None,
) -> None:
    """Close a tunnel from values a caller persisted.

    Args:
        pid: Worker process ID
        tunnel_type: Backend that opened the tunnel
        session_id: Remote session to terminate (ssm)
        region: Region of the remote session (ssm)
        ssm_profile: AWS profile used to open the session
        ssm_role_arn: Role assumed to open the session
        settings: Shutdown behaviour

    Raises:
        TunnelCloseError: If stopping the process or the remote session failed
    """
    settings = settings or LaunchSettings()
    ref = TunnelRef(
        pid=pid,
        tunnel_type=TunnelType(tunnel_type),
        session_id=session_id,
        region=region,
        ssm_profile=ssm_profile,
        ssm_role_arn=ssm_role_arn,
    )
    logger.info("Closing tunnel", pid=pid, tunnel_type=ref.tunnel_type.value)
    _shutdown(ref, get_backend(ref.tunnel_type, settings), settings)


class TunnelManager:
    """Opens tunnels in detached workers and tracks them until closed."""

    def __init__(
        self,
        settings: LaunchSettings | None = None,
        launcher: ProcessLauncher | None = None,
        backends: dict[TunnelType, TunnelBackend] | None = None,
    ):
        """Initialize tunnel manager.

        Args:
            settings: Launch and shutdown settings
            launcher: Worker launcher, defaults to re-executing this interpreter
            backends: Backend instances by type, created on demand if missing
        """
        self.settings = settings or LaunchSettings()
        self.launcher = launcher or ProcessLauncher()
        self.registry = TunnelRegistry(max_tunnels=self.settings.max_tunnels)
        self._backends: dict[TunnelType, TunnelBackend] = dict(backends or {})
        logger.info(
            "Initialized TunnelManager",
            max_tunnels=self.settings.max_tunnels,
            log_dir=str(self.settings.log_dir),
        )

    def backend_for(self, tunnel_type: TunnelType) -> TunnelBackend:
        """Backend instance for a tunnel type"""
        if tunnel_type not in self._backends:
            self._backends[tunnel_type] = get_backend(tunnel_type, self.settings)
        return self._backends[tunnel_type]

    def open(
        self, config: TunnelConfig, parent_pid: int | None = None
    ) -> TunnelHandle:
        """Open a tunnel and return once its worker survived startup.

        Args:
            config: Tunnel configuration
            parent_pid: Process whose death closes the tunnel, defaults to ours

        Returns:
            Handle of the running tunnel

        Raises:
            ConfigError: If the configuration cannot be used
            PreflightError: If a backend remote call failed
            TunnelRegistryError: If the limit is reached or the port is taken
            TunnelStartError: If the worker failed to start
        """
        tunnel_type = TunnelType(config.tunnel_type)
        backend = self.backend_for(tunnel_type)

        if config.local_port == 0:
            config = config.with_local_port(allocate_port(config.local_host))
        self.registry.check_available(config.local_host, config.local_port)

        logger.info(
            "Opening tunnel",
            tunnel_type=tunnel_type.value,
            config=sanitize_log_data(config.model_dump(mode="json")),
        )
        payload = backend.preflight(config)

        worker: WorkerProcess | None = None
        try:
            descriptor = LaunchDescriptor.from_settings(payload, self.settings)
            log_path = backend.log_path(config)
            worker = self.launcher.fork(
                descriptor, log_path, backend.grace_period, parent_pid
            )
            handle = TunnelHandle(
                id=f"{tunnel_type.value}-{config.local_port}-{uuid.uuid4().hex[:8]}",
                tunnel_type=tunnel_type,
                local_host=config.local_host,
                local_port=config.local_port,
                pid=worker.pid,
                log_path=str(log_path),
                **backend.handle_fields(config, payload),
            )
            self.registry.add_tunnel(handle, worker)
        except Exception:
            if worker is not None:
                self._discard(worker)
            self._abort(backend, config, payload)
            raise

        logger.info(
            "Tunnel opened",
            tunnel_id=handle.id,
            endpoint=handle.endpoint,
            pid=handle.pid,
        )
        return handle

    def _discard(self, worker: WorkerProcess) -> None:
        try:
            worker.stop(CleanupStrategy.FORCE, self.settings.shutdown_timeout)
        except ProcessError as e:
            logger.error(
                "Failed to stop worker after open failure",
                pid=worker.pid,
                error=str(e),
            )

    def _abort(
        self, backend: TunnelBackend, config: TunnelConfig, payload: object
    ) -> None:
        try:
            backend.abort(config, payload)
        except TunnelProviderError as e:
            logger.error(
                "Failed to undo pre-flight after open failure",
                tunnel_type=config.tunnel_type,
                error=str(e),
            )

    def close(self, tunnel: TunnelHandle | str | int) -> TunnelHandle:
        """Close a tunnel by handle, ID or worker pid.

        Returns:
            The handle in closed state

        Raises:
            TunnelRegistryError: If an ID or pid is given that is not registered
            TunnelCloseError: If stopping the process or the remote session failed
        """
        if isinstance(tunnel, TunnelHandle):
            handle = tunnel
        else:
            if isinstance(tunnel, int):
                found = self.registry.find_by_pid(tunnel)
            else:
                found = self.registry.get_tunnel(tunnel)
            if found is None:
                raise TunnelRegistryError(f"Tunnel '{tunnel}' not found")
            handle = found

        registered = handle.id in self.registry.tunnels
        if registered:
            self.registry.update_tunnel_status(handle.id, TunnelState.CLOSING)

        logger.info("Closing tunnel", tunnel_id=handle.id, pid=handle.pid)
        try:
            _shutdown(
                handle.ref,
                self.backend_for(handle.tunnel_type),
                self.settings,
                self.registry.get_worker(handle.id),
            )
        except TunnelCloseError:
            if registered:
                self.registry.update_tunnel_status(handle.id, TunnelState.ERROR)
            raise

        if registered:
            self.registry.remove_tunnel(handle.id)
        return handle.with_status(TunnelState.CLOSED)

    def list_tunnels(self) -> list[TunnelHandle]:
        """Tunnels opened by this manager and not yet closed"""
        return self.registry.list_tunnels()

    def close_all(self) -> bool:
        """Close every registered tunnel.

        Returns:
            True if all tunnels closed cleanly
        """
        success = True
        for handle in self.registry.list_tunnels():
            try:
                self.close(handle)
            except TunnelCloseError as e:
                logger.error("Error closing tunnel", tunnel_id=handle.id, error=str(e))
                success = False

        logger.info("Closed all tunnels", success=success)
        return success

    def __enter__(self) -> "TunnelManager":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self.close_all()
        return False
