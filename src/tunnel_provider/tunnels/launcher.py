"""Detached worker spawning and supervision."""

import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Any

import psutil

from ..common.exceptions import ConfigError, ProcessError, TunnelStartError
from ..common.logging import get_logger
from ..common.settings import (
    TUNNEL_CONF_ENV,
    TUNNEL_TYPE_ENV,
    WORKER_MODULE,
    CleanupStrategy,
)
from ..common.watchdog import check_healthy, interrupt
from .codec import encode
from .models import LaunchDescriptor, TunnelType

logger = get_logger(__name__)


def _detach_options() -> dict[str, Any]:
    if sys.platform == "win32":
        return {
            "creationflags": subprocess.DETACHED_PROCESS
            | subprocess.CREATE_NEW_PROCESS_GROUP
        }
    return {"start_new_session": True}


def stop_worker(
    pid: int,
    strategy: CleanupStrategy = CleanupStrategy.GRACEFUL,
    timeout: float = 5.0,
) -> bool:
    """Stop a worker process by pid.

    Args:
        pid: Worker process ID
        strategy: How to stop the process
        timeout: Seconds to wait for a graceful exit

    Returns:
        True if the process is gone, False if it is still shutting down

    Raises:
        ProcessError: If the process exists but cannot be signalled
    """
    try:
        process = psutil.Process(pid)
        if strategy == CleanupStrategy.FORCE:
            process.kill()
        else:
            interrupt(pid)
    except psutil.NoSuchProcess:
        logger.warning("Worker process already gone", pid=pid)
        return True
    except psutil.Error as e:
        raise ProcessError(f"failed to signal process {pid}: {e}") from e

    try:
        process.wait(timeout=timeout)
        logger.info("Worker process stopped", pid=pid)
        return True
    except psutil.NoSuchProcess:
        return True
    except psutil.TimeoutExpired:
        if strategy != CleanupStrategy.GRACEFUL_THEN_FORCE:
            logger.warning(
                "Worker still draining connections", pid=pid, timeout=timeout
            )
            return False

    logger.warning("Worker did not stop gracefully, force killing", pid=pid)
    try:
        process.kill()
        process.wait(timeout=timeout)
    except psutil.NoSuchProcess:
        return True
    except psutil.Error as e:
        raise ProcessError(f"failed to kill process {pid}: {e}") from e
    return True


class WorkerProcess:
    """A spawned tunnel worker owned by the front end."""

    def __init__(
        self,
        process: "subprocess.Popen[bytes]",
        log_path: Path,
        descriptor: LaunchDescriptor,
    ):
        self._process = process
        self.log_path = log_path
        self.tunnel_type: TunnelType = descriptor.tunnel_type
        self.local_port = descriptor.local_port

    @property
    def pid(self) -> int:
        return self._process.pid

    def is_running(self) -> bool:
        """Check if the worker has not exited"""
        return self._process.poll() is None

    def stop(
        self,
        strategy: CleanupStrategy = CleanupStrategy.GRACEFUL,
        timeout: float = 5.0,
    ) -> bool:
        """Stop the worker and reap it once it exited"""
        if not self.is_running():
            logger.debug("Worker not running, nothing to stop", pid=self.pid)
            return True

        stopped = stop_worker(self.pid, strategy, timeout)
        if stopped:
            # Reap the child; psutil may already have collected its status
            self._process.poll()
        return stopped

    def __repr__(self) -> str:
        return (
            f"WorkerProcess(pid={self.pid}, tunnel_type={self.tunnel_type.value}, "
            f"local_port={self.local_port}, log_path={str(self.log_path)!r})"
        )


class ProcessLauncher:
    """Re-executes the current interpreter as a detached tunnel worker."""

    def __init__(self, executable: str | None = None, module: str = WORKER_MODULE):
        """Initialize launcher.

        Args:
            executable: Interpreter to run, defaults to the current one
            module: Module run with ``-m`` in the worker
        """
        self.executable = executable or sys.executable
        self.module = module

    def command(self, parent_pid: int) -> list[str]:
        """Worker command line for a watched parent pid"""
        return [self.executable, "-m", self.module, str(parent_pid)]

    def environment(self, descriptor: LaunchDescriptor) -> dict[str, str]:
        """Child environment carrying the role marker and encoded descriptor"""
        env = os.environ.copy()
        env[TUNNEL_TYPE_ENV] = descriptor.tunnel_type.value
        env[TUNNEL_CONF_ENV] = encode(descriptor)
        return env

    def fork(
        self,
        descriptor: LaunchDescriptor,
        log_path: Path,
        grace_period: float,
        parent_pid: int | None = None,
    ) -> WorkerProcess:
        """Spawn a detached worker and wait out its startup grace window.

        Args:
            descriptor: Everything the worker needs
            log_path: File receiving the worker's stdout and stderr
            grace_period: Seconds to wait before checking the worker is alive
            parent_pid: Process whose death stops the worker, defaults to ours

        Returns:
            The running worker

        Raises:
            ConfigError: If the local port has not been resolved
            TunnelStartError: If the worker failed to spawn or died early
        """
        if descriptor.local_port == 0:
            raise ConfigError("local port must be allocated before launching")

        if parent_pid is None:
            parent_pid = os.getpid()

        tunnel_type = descriptor.tunnel_type.value
        env = self.environment(descriptor)
        command = self.command(parent_pid)

        logger.info(
            "Starting tunnel worker",
            tunnel_type=tunnel_type,
            parent_pid=parent_pid,
            log_path=str(log_path),
        )
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "ab") as log_file:
                process = subprocess.Popen(
                    command,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    close_fds=True,
                    **_detach_options(),
                )
        except OSError as e:
            raise TunnelStartError(
                f"failed to start {tunnel_type} tunnel: {e}", log_path=str(log_path)
            ) from e

        time.sleep(grace_period)

        returncode = process.poll()
        if returncode is not None:
            raise TunnelStartError(
                f"{tunnel_type} tunnel exited with status {returncode}",
                log_path=str(log_path),
            )

        try:
            check_healthy(process.pid)
        except ProcessError as e:
            raise TunnelStartError(
                f"{tunnel_type} tunnel died: {e}", log_path=str(log_path)
            ) from e

        logger.info(
            "Tunnel worker started",
            tunnel_type=tunnel_type,
            pid=process.pid,
            local_port=descriptor.local_port,
        )
        return WorkerProcess(process, log_path, descriptor)
