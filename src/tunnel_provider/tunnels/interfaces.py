"""Backend and forwarding engine contracts.

A backend contributes the parts that differ per transport: pre-flight in the
front end, the forwarding engine inside the worker, and remote teardown at
close time. Spawning, supervision and the state machine are shared.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from ..common.exceptions import EngineError
from ..common.logging import get_logger
from ..common.settings import LaunchSettings
from ..common.utils import safe_filename_part
from .lifecycle import TunnelLifecycle
from .models import TunnelState, TunnelType

if TYPE_CHECKING:
    from .models import LaunchDescriptor, TunnelRef

logger = get_logger(__name__)


class EngineState(str, Enum):
    """Connection states reported by forwarding engines."""

    STARTED = "started"
    STOPPED = "stopped"


StateCallback = Callable[["ForwardingEngine", EngineState], None]


class ForwardingEngine(ABC):
    """Moves bytes between a local listener and a remote endpoint.

    ``start`` returns once the engine is listening and has reported
    ``EngineState.STARTED``. ``stop`` shuts down gracefully and lets open
    connections drain. ``request_stop`` only sets a flag so it is safe to
    call from a signal handler.
    """

    def __init__(self, name: str, poll_interval: float = 0.5):
        self.name = name
        self.lifecycle = TunnelLifecycle(name)
        self._poll_interval = poll_interval
        self._stop_requested = False
        self._callbacks: list[StateCallback] = []

    def on_state(self, callback: StateCallback) -> None:
        """Register a connection state callback."""
        self._callbacks.append(callback)

    def _emit(self, state: EngineState) -> None:
        if state == EngineState.STARTED:
            self.lifecycle.transition(TunnelState.READY)
        for callback in list(self._callbacks):
            callback(self, state)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """Ask the foreground loop to shut the engine down."""
        self._stop_requested = True

    @abstractmethod
    def start(self) -> None:
        """Bring the forwarder up; blocks until it listens."""

    @abstractmethod
    def stop(self) -> None:
        """Stop accepting connections and drain the open ones."""

    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the forwarder is still able to serve."""

    def run_foreground(self) -> None:
        """Run until a stop is requested.

        Raises:
            EngineError: If the engine fails to start or dies while running
        """
        self.lifecycle.transition(TunnelState.STARTING)
        try:
            self.start()
            if self.lifecycle.state != TunnelState.READY:
                raise EngineError(f"{self.name}: engine never reported started")
            self.lifecycle.transition(TunnelState.RUNNING)
            logger.info("Tunnel running", tunnel=self.name)

            while not self._stop_requested:
                if not self.is_alive():
                    raise EngineError(f"{self.name}: forwarding stopped unexpectedly")
                time.sleep(self._poll_interval)
        except Exception as e:
            self.lifecycle.fail(str(e))
            self._stop_after_failure()
            raise

        logger.info("stopping tunnel: received interrupt signal", tunnel=self.name)
        self.lifecycle.transition(TunnelState.CLOSING)
        self.stop()
        self._emit(EngineState.STOPPED)
        self.lifecycle.transition(TunnelState.CLOSED)
        logger.info("Tunnel closed", tunnel=self.name)

    def _stop_after_failure(self) -> None:
        try:
            self.stop()
        except Exception as e:
            logger.warning(
                "Error stopping failed engine", tunnel=self.name, error=str(e)
            )


class TunnelBackend(ABC):
    """One transport variant: ssh, ssm or kubernetes."""

    tunnel_type: ClassVar[TunnelType]

    def __init__(self, settings: LaunchSettings | None = None):
        self.settings = settings or LaunchSettings()

    @property
    def grace_period(self) -> float:
        """Seconds to wait for a near-instant worker crash after spawning."""
        return self.settings.grace_period_for(self.tunnel_type.value)

    @abstractmethod
    def log_identity(self, config: Any) -> str:
        """Target identity used in the log file name."""

    def log_path(self, config: Any) -> Path:
        """Deterministic log file for a target, shared by repeated tunnels."""
        identity = safe_filename_part(self.log_identity(config))
        name = f"{self.tunnel_type.value}-tunnel-{identity}-{config.target_port}.log"
        return self.settings.log_dir / name

    @abstractmethod
    def preflight(self, config: Any) -> Any:
        """Front-end work done before any process exists.

        Returns:
            The payload handed to the worker

        Raises:
            ConfigError: If the configuration cannot be used
            PreflightError: If a remote call fails
        """

    @abstractmethod
    def create_engine(self, descriptor: LaunchDescriptor) -> ForwardingEngine:
        """Build the forwarding engine inside the worker."""

    def handle_fields(self, config: Any, payload: Any) -> dict[str, Any]:
        """Extra values the caller needs to close the tunnel later."""
        return {}

    def abort(self, config: Any, payload: Any) -> None:
        """Undo pre-flight side effects when the worker failed to start."""

    def teardown(self, ref: TunnelRef) -> None:
        """Release remote resources at close time."""
