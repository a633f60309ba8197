"""Parent liveness watchdog and process health helpers.

A tunnel worker outlives the command that created it, but must not outlive
the tool that asked for it. The operating system gives no portable
parent-death notification, so the worker polls its parent from a background
thread and interrupts itself once the parent is gone. The interrupt goes
through the same signal handler an operator-level close uses, so the
forwarding engine drains its connections before the process exits.
"""

import os
import signal
import sys
import threading
import time

import psutil

from .exceptions import ProcessError, WatchdogFailure
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL = 2.0


def _supports_interrupt() -> bool:
    return sys.platform != "win32"


def interrupt(pid: int) -> None:
    """Ask a process to shut down gracefully.

    Sends SIGINT where signals are usable and terminates the process
    otherwise.

    Raises:
        psutil.NoSuchProcess: If the process no longer exists
        psutil.AccessDenied: If the process cannot be signalled
    """
    process = psutil.Process(pid)
    if _supports_interrupt():
        process.send_signal(signal.SIGINT)
    else:
        process.terminate()


def is_alive(pid: int) -> bool:
    """Check whether a process exists and is not a zombie"""
    try:
        process = psutil.Process(pid)
        return process.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def check_healthy(pid: int) -> None:
    """Verify that a freshly spawned process is still running.

    Raises:
        ProcessError: If the process cannot be resolved or is a zombie
    """
    try:
        status = psutil.Process(pid).status()
    except psutil.Error as e:
        raise ProcessError(f"process {pid} cannot be resolved: {e}") from e

    if status == psutil.STATUS_ZOMBIE:
        raise ProcessError(f"process {pid} died")


class ProcessWatchdog:
    """Interrupts the current process when a watched parent process disappears."""

    def __init__(self, parent_pid: int, interval: float = DEFAULT_POLL_INTERVAL):
        """Initialize watchdog.

        Args:
            parent_pid: Process whose lifetime bounds the current process
            interval: Seconds between two liveness checks
        """
        if interval <= 0:
            raise ValueError("Watchdog interval must be positive")

        self.parent_pid = parent_pid
        self.interval = interval
        self._parent: psutil.Process | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Validate the parent pid and start polling in the background.

        Raises:
            WatchdogFailure: If the parent process cannot be resolved
        """
        if self._thread is not None:
            return

        if self.parent_pid <= 0:
            raise WatchdogFailure(f"Invalid parent PID: {self.parent_pid}")

        try:
            self._parent = psutil.Process(self.parent_pid)
        except psutil.Error as e:
            raise WatchdogFailure(
                f"Cannot watch parent process {self.parent_pid}: {e}"
            ) from e

        self._thread = threading.Thread(
            target=self._run, name=f"watchdog-{self.parent_pid}", daemon=True
        )
        self._thread.start()
        logger.info(
            "Watching parent process",
            parent_pid=self.parent_pid,
            interval=self.interval,
        )

    def parent_alive(self) -> bool:
        """Check the watched parent once"""
        if self._parent is None:
            return False
        try:
            # is_running() also guards against pid reuse
            if not self._parent.is_running():
                return False
            return self._parent.status() != psutil.STATUS_ZOMBIE
        except psutil.Error:
            return False

    def _run(self) -> None:
        # No exit path: the thread lives exactly as long as the process
        while True:
            if not self.parent_alive():
                logger.warning("parent process exited", parent_pid=self.parent_pid)
                try:
                    self._terminate_self()
                except (OSError, psutil.Error) as e:
                    logger.error("failed to terminate process", error=str(e))
            time.sleep(self.interval)

    def _terminate_self(self) -> None:
        if _supports_interrupt():
            os.kill(os.getpid(), signal.SIGINT)
        else:
            psutil.Process(os.getpid()).terminate()
