"""Tunnel lifecycle: models, codec, launcher and the front-end manager."""

from .codec import decode_config, decode_descriptor, encode
from .interfaces import EngineState, ForwardingEngine, TunnelBackend
from .launcher import ProcessLauncher, WorkerProcess, stop_worker
from .lifecycle import TunnelLifecycle
from .manager import TunnelManager, close_tunnel
from .models import (
    ClusterAccess,
    ExecConfig,
    KubernetesPodPayload,
    KubernetesTunnelConfig,
    LaunchDescriptor,
    RemoteSession,
    SSHTunnelConfig,
    SSMSessionPayload,
    SSMTunnelConfig,
    TunnelConfig,
    TunnelHandle,
    TunnelRef,
    TunnelState,
    TunnelType,
)
from .registry import TunnelRegistry

__all__ = [
    # Models
    "TunnelType",
    "TunnelState",
    "TunnelConfig",
    "SSHTunnelConfig",
    "SSMTunnelConfig",
    "KubernetesTunnelConfig",
    "ClusterAccess",
    "ExecConfig",
    "RemoteSession",
    "SSMSessionPayload",
    "KubernetesPodPayload",
    "LaunchDescriptor",
    "TunnelHandle",
    "TunnelRef",
    # Codec
    "encode",
    "decode_config",
    "decode_descriptor",
    # Lifecycle
    "TunnelLifecycle",
    "TunnelBackend",
    "ForwardingEngine",
    "EngineState",
    # Processes
    "ProcessLauncher",
    "WorkerProcess",
    "stop_worker",
    # Front end
    "TunnelRegistry",
    "TunnelManager",
    "close_tunnel",
]
