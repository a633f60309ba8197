"""Tunnel registry for managing open tunnels."""

from pydantic import BaseModel, Field, PrivateAttr

from ..common.exceptions import TunnelRegistryError
from ..common.logging import get_logger
from .launcher import WorkerProcess
from .lifecycle import TERMINAL_STATES
from .models import TunnelHandle, TunnelState, TunnelType

logger = get_logger(__name__)


class TunnelRegistry(BaseModel):
    """In-memory store for open tunnels and the workers serving them."""

    tunnels: dict[str, TunnelHandle] = Field(
        default_factory=dict, description="Open tunnels by ID"
    )
    max_tunnels: int = Field(
        default=32, ge=1, le=1024, description="Maximum number of tunnels"
    )

    _workers: dict[str, WorkerProcess] = PrivateAttr(default_factory=dict)

    def check_available(self, local_host: str, local_port: int) -> None:
        """Verify a new tunnel could be registered.

        Args:
            local_host: Address the new tunnel listens on
            local_port: Port the new tunnel listens on

        Raises:
            TunnelRegistryError: If the limit is reached or the port is taken
        """
        if len(self.tunnels) >= self.max_tunnels:
            raise TunnelRegistryError(
                f"Maximum tunnel limit ({self.max_tunnels}) reached"
            )

        for existing in self.tunnels.values():
            if (
                existing.status not in TERMINAL_STATES
                and existing.local_host == local_host
                and existing.local_port == local_port
            ):
                raise TunnelRegistryError(
                    f"Local port {local_host}:{local_port} already in use "
                    f"by tunnel '{existing.id}'"
                )

    def add_tunnel(
        self, handle: TunnelHandle, worker: WorkerProcess | None = None
    ) -> None:
        """Add tunnel to registry with validation.

        Raises:
            TunnelRegistryError: If tunnel ID already exists or validation fails
        """
        if handle.id in self.tunnels:
            raise TunnelRegistryError(f"Tunnel with ID '{handle.id}' already exists")

        self.check_available(handle.local_host, handle.local_port)

        self.tunnels[handle.id] = handle
        if worker is not None:
            self._workers[handle.id] = worker
        logger.info("Added tunnel to registry", tunnel_id=handle.id, pid=handle.pid)

    def remove_tunnel(self, tunnel_id: str) -> TunnelHandle:
        """Remove tunnel from registry.

        Raises:
            TunnelRegistryError: If tunnel not found
        """
        if tunnel_id not in self.tunnels:
            raise TunnelRegistryError(f"Tunnel '{tunnel_id}' not found")

        handle = self.tunnels.pop(tunnel_id)
        self._workers.pop(tunnel_id, None)
        logger.info("Removed tunnel from registry", tunnel_id=tunnel_id)
        return handle

    def get_tunnel(self, tunnel_id: str) -> TunnelHandle | None:
        """Get tunnel by ID, None if unknown"""
        return self.tunnels.get(tunnel_id)

    def get_worker(self, tunnel_id: str) -> WorkerProcess | None:
        """Get the worker process of a tunnel opened by this registry's owner"""
        return self._workers.get(tunnel_id)

    def find_by_pid(self, pid: int) -> TunnelHandle | None:
        """Get tunnel served by a worker pid"""
        for handle in self.tunnels.values():
            if handle.pid == pid:
                return handle
        return None

    def update_tunnel_status(self, tunnel_id: str, status: TunnelState) -> None:
        """Update tunnel status.

        Raises:
            TunnelRegistryError: If tunnel not found
        """
        if tunnel_id not in self.tunnels:
            raise TunnelRegistryError(f"Tunnel '{tunnel_id}' not found")

        self.tunnels[tunnel_id] = self.tunnels[tunnel_id].with_status(status)
        logger.info(
            "Updated tunnel status", tunnel_id=tunnel_id, status=status.value
        )

    def list_tunnels(
        self,
        tunnel_type: TunnelType | None = None,
        status: TunnelState | None = None,
    ) -> list[TunnelHandle]:
        """List tunnels with optional filtering"""
        tunnels = list(self.tunnels.values())

        if tunnel_type is not None:
            tunnels = [t for t in tunnels if t.tunnel_type == tunnel_type]

        if status is not None:
            tunnels = [t for t in tunnels if t.status == status]

        return tunnels
