"""Tunnel models.

This module defines the backend configuration variants, the payloads handed
to worker processes, the launch descriptor shared by front end and worker,
and the handle returned to callers.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from ..common.settings import LaunchSettings
from ..common.utils import validate_non_empty_string


class TunnelType(str, Enum):
    """Tunnel backend enumeration."""

    SSH = "ssh"
    SSM = "ssm"
    KUBERNETES = "kubernetes"


class TunnelState(str, Enum):
    """Tunnel lifecycle states."""

    CREATED = "created"
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


class BaseTunnelConfig(BaseModel):
    """Fields shared by every backend configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    local_host: str = Field(
        default="localhost", min_length=1, description="Local address to listen on"
    )
    local_port: int = Field(
        default=0, ge=0, le=65535, description="Local port, 0 allocates one"
    )
    target_port: int = Field(ge=1, le=65535, description="Remote port to reach")

    def with_local_port(self, port: int) -> Any:
        """Return a copy bound to a resolved local port."""
        return self.model_copy(update={"local_port": port})


class SSHTunnelConfig(BaseTunnelConfig):
    """Tunnel through an SSH bastion host."""

    tunnel_type: Literal["ssh"] = "ssh"
    target_host: str = Field(min_length=1, description="Host reachable from bastion")
    ssh_host: str = Field(min_length=1, description="SSH bastion host")
    ssh_port: int = Field(default=22, ge=1, le=65535, description="SSH bastion port")
    ssh_user: str | None = Field(default=None, description="SSH user name")
    ssh_password: str | None = Field(default=None, repr=False)
    ssh_key: str | None = Field(
        default=None, repr=False, description="Private key file path or PEM material"
    )
    ssh_key_passphrase: str | None = Field(default=None, repr=False)

    @field_validator("ssh_host", "target_host")
    @classmethod
    def validate_hosts(cls, v: str, info: ValidationInfo) -> str:
        """Host names must not be blank."""
        return validate_non_empty_string(v, info.field_name or "host")

    @model_validator(mode="after")
    def validate_credentials(self) -> "SSHTunnelConfig":
        """Require exactly one credential kind."""
        has_password = bool(self.ssh_password)
        has_key = bool(self.ssh_key)

        if self.ssh_key_passphrase and not has_key:
            raise ValueError("ssh_key_passphrase requires ssh_key")
        if has_password and has_key:
            raise ValueError("ssh_password and ssh_key are mutually exclusive")
        if not has_password and not has_key:
            raise ValueError("one of ssh_password or ssh_key is required")
        return self

    @property
    def credential_kind(self) -> str:
        """Credential used to authenticate against the bastion."""
        if self.ssh_password:
            return "password"
        if self.ssh_key_passphrase:
            return "encrypted_key"
        return "key"


class SSMTunnelConfig(BaseTunnelConfig):
    """Tunnel through AWS Systems Manager Session Manager."""

    tunnel_type: Literal["ssm"] = "ssm"
    target_host: str = Field(min_length=1, description="Host reachable from instance")
    ssm_instance: str = Field(min_length=1, description="Managed instance ID")
    ssm_region: str = Field(min_length=1, description="AWS region of the instance")
    ssm_profile: str | None = Field(default=None, description="AWS shared profile")
    ssm_role_arn: str | None = Field(default=None, description="Role to assume")

    @field_validator("ssm_instance", "ssm_region", "target_host")
    @classmethod
    def validate_identifiers(cls, v: str, info: ValidationInfo) -> str:
        return validate_non_empty_string(v, info.field_name or "value")

    @field_validator("local_host")
    @classmethod
    def validate_local_host(cls, v: str) -> str:
        """The session plugin always listens on localhost."""
        if v != "localhost":
            raise ValueError("SSM tunnels can only listen on localhost")
        return v


class ExecConfig(BaseModel):
    """Kubernetes exec credential plugin settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    api_version: str = Field(min_length=1)
    command: str = Field(min_length=1)
    env: dict[str, str] | None = Field(default=None, repr=False)
    args: list[str] | None = Field(default=None, repr=False)


class ClusterAccess(BaseModel):
    """Everything needed to reach a Kubernetes API server.

    Absent fields fall back to kubeconfig; an empty string is a value.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str | None = None
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    insecure: bool | None = None
    tls_server_name: str | None = None
    client_certificate: str | None = Field(default=None, repr=False)
    client_key: str | None = Field(default=None, repr=False)
    cluster_ca_certificate: str | None = Field(default=None, repr=False)
    config_paths: list[str] | None = None
    config_path: str | None = None
    config_context: str | None = None
    config_context_auth_info: str | None = None
    config_context_cluster: str | None = None
    token: str | None = Field(default=None, repr=False)
    proxy_url: str | None = None
    exec: ExecConfig | None = None


class KubernetesTunnelConfig(BaseTunnelConfig):
    """Port forward to a pod behind a Kubernetes service."""

    tunnel_type: Literal["kubernetes"] = "kubernetes"
    namespace: str = Field(min_length=1)
    service_name: str = Field(min_length=1)
    kubernetes: ClusterAccess | None = None


TunnelConfig = Annotated[
    Union[SSHTunnelConfig, SSMTunnelConfig, KubernetesTunnelConfig],
    Field(discriminator="tunnel_type"),
]


class RemoteSession(BaseModel):
    """Session Manager session opened by the front end."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    session_id: str = Field(min_length=1)
    token_value: str = Field(repr=False)
    stream_url: str = Field(repr=False)
    region: str = Field(min_length=1)


class SSMSessionPayload(BaseModel):
    """What an SSM worker needs: the opened session, never the raw config."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tunnel_type: Literal["ssm"] = "ssm"
    session: RemoteSession
    ssm_instance: str
    ssm_profile: str | None = None
    target_host: str
    target_port: int = Field(ge=1, le=65535)
    local_host: str = "localhost"
    local_port: int = Field(ge=1, le=65535)
    endpoint_url: str
    plugin_path: str


class KubernetesPodPayload(BaseModel):
    """Kubernetes config together with the pod chosen during pre-flight."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tunnel_type: Literal["kubernetes"] = "kubernetes"
    config: KubernetesTunnelConfig
    pod_name: str = Field(min_length=1)


WorkerPayload = Annotated[
    Union[SSHTunnelConfig, SSMSessionPayload, KubernetesPodPayload],
    Field(discriminator="tunnel_type"),
]


class LaunchDescriptor(BaseModel):
    """Everything a worker process receives from the front end."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tunnel_type: TunnelType
    payload: WorkerPayload
    watchdog_interval: float = Field(default=2.0, gt=0)
    self_test_timeout: float = Field(default=2.0, gt=0)
    shutdown_timeout: float = Field(default=5.0, gt=0)
    log_level: str = "INFO"
    json_logs: bool = False

    @model_validator(mode="after")
    def validate_payload_type(self) -> "LaunchDescriptor":
        """Payload must belong to the announced backend."""
        if self.payload.tunnel_type != self.tunnel_type.value:
            raise ValueError(
                f"payload type {self.payload.tunnel_type!r} does not match "
                f"tunnel type {self.tunnel_type.value!r}"
            )
        return self

    @property
    def local_port(self) -> int:
        """Local port served by the worker."""
        if isinstance(self.payload, KubernetesPodPayload):
            return self.payload.config.local_port
        return self.payload.local_port

    @classmethod
    def from_settings(
        cls, payload: Any, settings: LaunchSettings
    ) -> "LaunchDescriptor":
        """Build a descriptor for a payload using front-end settings."""
        return cls(
            tunnel_type=TunnelType(payload.tunnel_type),
            payload=payload,
            watchdog_interval=settings.watchdog_interval,
            self_test_timeout=settings.self_test_timeout,
            shutdown_timeout=settings.shutdown_timeout,
            log_level=settings.log_level,
            json_logs=settings.json_logs,
        )


class TunnelRef(BaseModel):
    """Values needed to close a tunnel, as a caller may have persisted them."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    pid: int = Field(ge=1)
    tunnel_type: TunnelType
    session_id: str | None = None
    region: str | None = None
    ssm_profile: str | None = None
    ssm_role_arn: str | None = None


class TunnelHandle(BaseModel):
    """Result of opening a tunnel; all a caller needs to close it later."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1, description="Unique tunnel identifier")
    tunnel_type: TunnelType
    local_host: str
    local_port: int = Field(ge=1, le=65535)
    pid: int = Field(ge=1, description="Worker process ID")
    log_path: str
    session_id: str | None = None
    region: str | None = None
    ssm_profile: str | None = None
    ssm_role_arn: str | None = None
    status: TunnelState = TunnelState.READY
    created_at: datetime = Field(default_factory=datetime.now)
    closed_at: datetime | None = None

    @property
    def endpoint(self) -> str:
        """Local endpoint as ``host:port``."""
        return f"{self.local_host}:{self.local_port}"

    @property
    def ref(self) -> TunnelRef:
        """Close reference for this tunnel."""
        return TunnelRef(
            pid=self.pid,
            tunnel_type=self.tunnel_type,
            session_id=self.session_id,
            region=self.region,
            ssm_profile=self.ssm_profile,
            ssm_role_arn=self.ssm_role_arn,
        )

    def as_result(self) -> tuple[str, int, int]:
        """Return ``(local_host, local_port, pid)``."""
        return self.local_host, self.local_port, self.pid

    def with_status(self, status: TunnelState) -> "TunnelHandle":
        """Create new handle instance with updated status (immutable pattern)."""
        update_data: dict[str, Any] = {"status": status}

        if status == TunnelState.CLOSED and self.closed_at is None:
            update_data["closed_at"] = datetime.now()

        return self.model_copy(update=update_data)
