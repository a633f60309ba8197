"""Worker process entry point.

The launcher re-executes the interpreter with the role marker and an encoded
launch descriptor in the environment and the watched parent pid as first
argument. The worker clears both variables, arms the parent watchdog and runs
the backend's forwarding engine until interrupted.
"""

import os
import signal
import sys
from collections.abc import MutableMapping
from types import FrameType

from .backends import get_backend
from .common.exceptions import DecodeError, TunnelProviderError, WatchdogFailure
from .common.logging import bind_tunnel_context, get_logger, setup_logging
from .common.settings import TUNNEL_CONF_ENV, TUNNEL_TYPE_ENV
from .common.watchdog import ProcessWatchdog
from .tunnels.codec import decode_descriptor
from .tunnels.interfaces import ForwardingEngine
from .tunnels.models import LaunchDescriptor

logger = get_logger(__name__)


def take_descriptor(
    environ: MutableMapping[str, str] | None = None,
) -> LaunchDescriptor:
    """Read and remove the role marker and descriptor from the environment.

    Raises:
        DecodeError: If either variable is missing, invalid or inconsistent
    """
    environ = os.environ if environ is None else environ
    tunnel_type = environ.pop(TUNNEL_TYPE_ENV, None)
    encoded = environ.pop(TUNNEL_CONF_ENV, None)

    if not tunnel_type or encoded is None:
        raise DecodeError(f"{TUNNEL_TYPE_ENV} and {TUNNEL_CONF_ENV} must both be set")

    descriptor = decode_descriptor(encoded)
    if descriptor.tunnel_type.value != tunnel_type:
        raise DecodeError(
            f"descriptor is for {descriptor.tunnel_type.value!r}, "
            f"worker started as {tunnel_type!r}"
        )
    return descriptor


def parse_parent_pid(args: list[str]) -> int:
    """Parent pid from the worker's first argument.

    Raises:
        WatchdogFailure: If the argument is missing or not a pid
    """
    if not args:
        raise WatchdogFailure("parent pid argument is missing")
    try:
        return int(args[0])
    except ValueError as e:
        raise WatchdogFailure(f"invalid parent pid: {args[0]!r}") from e


class StopSignal:
    """Signal handler forwarding stop requests to the engine.

    A signal that arrives before the engine exists is remembered and
    replayed by ``attach``.
    """

    def __init__(self) -> None:
        self.received = False
        self._engine: ForwardingEngine | None = None

    def attach(self, engine: ForwardingEngine) -> None:
        self._engine = engine
        if self.received:
            engine.request_stop()

    def __call__(self, signum: int, frame: FrameType | None) -> None:
        self.received = True
        if self._engine is not None:
            self._engine.request_stop()


def install_signal_handlers() -> StopSignal:
    """Route SIGINT and SIGTERM to a stop request."""
    stop = StopSignal()
    signal.signal(signal.SIGINT, stop)
    signal.signal(signal.SIGTERM, stop)
    return stop


def run_worker(argv: list[str] | None = None) -> int:
    """Run a tunnel worker until it is interrupted.

    Returns:
        Process exit status
    """
    args = sys.argv[1:] if argv is None else argv

    try:
        descriptor = take_descriptor()
    except DecodeError as e:
        setup_logging()
        logger.error("invalid tunnel configuration", error=str(e))
        return 1

    setup_logging(level=descriptor.log_level, json_format=descriptor.json_logs)
    bind_tunnel_context(
        tunnel_type=descriptor.tunnel_type.value, local_port=descriptor.local_port
    )
    # Must precede the watchdog, which interrupts this process
    stop = install_signal_handlers()
    try:
        parent_pid = parse_parent_pid(args)
        ProcessWatchdog(parent_pid, descriptor.watchdog_interval).start()

        engine = get_backend(descriptor.tunnel_type).create_engine(descriptor)
        stop.attach(engine)
        engine.run_foreground()
    except TunnelProviderError as e:
        logger.error("tunnel error", error=str(e), exc_info=True)
        return 1
    except Exception:
        logger.exception("unexpected tunnel error")
        return 1

    return 0
