"""Custom exceptions for tunnel provider."""


class TunnelProviderError(Exception):
    """Base exception for all tunnel provider errors."""

    pass


class ConfigError(TunnelProviderError, ValueError):
    """Raised when a tunnel configuration is malformed or contradictory."""

    pass


class PreflightError(TunnelProviderError):
    """Raised when a backend remote call fails before any worker exists."""

    pass


class NoPodsFoundError(PreflightError):
    """Raised when a Kubernetes service selects no pods."""

    pass


class TunnelStartError(TunnelProviderError):
    """Raised when a worker process exits or fails within its grace window."""

    def __init__(self, message: str, log_path: str | None = None):
        self.log_path = log_path
        if log_path:
            message = f"{message}. check {log_path} for more information"
        super().__init__(message)


class WatchdogFailure(TunnelProviderError):
    """Raised when the watchdog cannot resolve the process it should watch."""

    pass


class DecodeError(TunnelProviderError):
    """Raised when an encoded configuration cannot be decoded."""

    pass


class ProcessError(TunnelProviderError):
    """Raised when process operations fail."""

    pass


class PortAllocationError(TunnelProviderError):
    """Raised when no local port could be allocated."""

    pass


class LifecycleError(TunnelProviderError):
    """Raised on an illegal tunnel state transition."""

    pass


class EngineError(TunnelProviderError):
    """Raised when a forwarding engine fails inside a worker."""

    pass


class TunnelCloseError(TunnelProviderError):
    """Raised when one or more teardown steps of a tunnel failed."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class TunnelRegistryError(TunnelProviderError):
    """Raised for tunnel registry operations."""

    pass


class SessionError(TunnelProviderError):
    """Raised when a remote session cannot be terminated."""

    pass
