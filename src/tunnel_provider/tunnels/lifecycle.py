"""Tunnel state machine shared by the front end and workers."""

import threading

from ..common.exceptions import LifecycleError
from ..common.logging import get_logger
from .models import TunnelState

logger = get_logger(__name__)

TERMINAL_STATES = frozenset({TunnelState.CLOSED, TunnelState.ERROR})

ALLOWED_TRANSITIONS: dict[TunnelState, frozenset[TunnelState]] = {
    TunnelState.CREATED: frozenset({TunnelState.STARTING}),
    TunnelState.STARTING: frozenset({TunnelState.READY}),
    TunnelState.READY: frozenset({TunnelState.RUNNING, TunnelState.CLOSING}),
    TunnelState.RUNNING: frozenset({TunnelState.CLOSING}),
    TunnelState.CLOSING: frozenset({TunnelState.CLOSED}),
    TunnelState.CLOSED: frozenset(),
    TunnelState.ERROR: frozenset(),
}


class TunnelLifecycle:
    """Tracks one tunnel through Created -> ... -> Closed, or Error."""

    def __init__(self, name: str, initial: TunnelState = TunnelState.CREATED):
        self.name = name
        self._state = initial
        self._error: str | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def transition(self, target: TunnelState) -> None:
        """Move to ``target``.

        Raises:
            LifecycleError: If the transition is not allowed
        """
        if target == TunnelState.ERROR:
            raise LifecycleError("use fail() to enter the error state")

        with self._lock:
            if target not in ALLOWED_TRANSITIONS[self._state]:
                raise LifecycleError(
                    f"tunnel {self.name}: illegal transition "
                    f"{self._state.value} -> {target.value}"
                )
            previous = self._state
            self._state = target

        logger.debug(
            "Tunnel state changed",
            tunnel=self.name,
            previous=previous.value,
            state=target.value,
        )

    def fail(self, reason: str) -> None:
        """Enter the absorbing error state from any non-terminal state."""
        with self._lock:
            if self._state in TERMINAL_STATES:
                return
            previous = self._state
            self._state = TunnelState.ERROR
            self._error = reason

        logger.error(
            "Tunnel failed", tunnel=self.name, previous=previous.value, reason=reason
        )
