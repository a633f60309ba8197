"""SSH bastion backend built on sshtunnel and paramiko."""

import getpass
import io
import logging
import os
import socket
from typing import Any

import paramiko
from sshtunnel import BaseSSHTunnelForwarderError, SSHTunnelForwarder

from ..common.exceptions import ConfigError, EngineError
from ..common.logging import get_logger
from ..tunnels.interfaces import EngineState, ForwardingEngine, TunnelBackend
from ..tunnels.models import LaunchDescriptor, SSHTunnelConfig, TunnelType

logger = get_logger(__name__)

# Key types tried in order when the key format is not known up front
_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.RSAKey,
    paramiko.ECDSAKey,
    paramiko.Ed25519Key,
)


def load_private_key(key: str, passphrase: str | None = None) -> paramiko.PKey:
    """Load a private key from a file path or from PEM material.

    Args:
        key: Path to a key file, or the key itself
        passphrase: Passphrase of an encrypted key

    Returns:
        Parsed key

    Raises:
        ConfigError: If the key cannot be parsed or needs a passphrase
    """
    is_file = os.path.isfile(key)
    errors: list[str] = []

    for key_class in _KEY_CLASSES:
        try:
            if is_file:
                return key_class.from_private_key_file(key, password=passphrase)
            return key_class.from_private_key(io.StringIO(key), password=passphrase)
        except paramiko.PasswordRequiredException as e:
            raise ConfigError(
                "ssh_key is encrypted, ssh_key_passphrase is required"
            ) from e
        except (paramiko.SSHException, ValueError) as e:
            errors.append(f"{key_class.__name__}: {e}")

    source = "file" if is_file else "material"
    raise ConfigError(f"unable to parse ssh key {source}: {'; '.join(errors)}")


class SSHForwardingEngine(ForwardingEngine):
    """Local listener forwarded through an SSH bastion."""

    def __init__(self, config: SSHTunnelConfig, self_test_timeout: float = 2.0):
        super().__init__(f"ssh:{config.ssh_host}:{config.target_port}")
        self.config = config
        self.self_test_timeout = self_test_timeout
        self._forwarder: SSHTunnelForwarder | None = None
        self.on_state(self._self_test)

    def _build_forwarder(self) -> SSHTunnelForwarder:
        config = self.config
        credentials: dict[str, Any] = {}
        if config.ssh_key:
            credentials["ssh_pkey"] = load_private_key(
                config.ssh_key, config.ssh_key_passphrase
            )
        else:
            credentials["ssh_password"] = config.ssh_password

        return SSHTunnelForwarder(
            (config.ssh_host, config.ssh_port),
            ssh_username=config.ssh_user,
            remote_bind_address=(config.target_host, config.target_port),
            local_bind_address=(config.local_host, config.local_port),
            allow_agent=False,
            host_pkey_directories=[],
            logger=logging.getLogger("sshtunnel"),
            **credentials,
        )

    def start(self) -> None:
        config = self.config
        logger.info(
            "starting tunnel",
            local=f"{config.local_host}:{config.local_port}",
            bastion=f"{config.ssh_host}:{config.ssh_port}",
            target=f"{config.target_host}:{config.target_port}",
            auth=config.credential_kind,
        )
        forwarder = self._build_forwarder()
        try:
            forwarder.start()
        except (BaseSSHTunnelForwarderError, paramiko.SSHException, OSError) as e:
            raise EngineError(f"failed to start ssh tunnel: {e}") from e

        self._forwarder = forwarder
        self._emit(EngineState.STARTED)

    def _self_test(self, engine: ForwardingEngine, state: EngineState) -> None:
        if state != EngineState.STARTED:
            return

        address = (self.config.local_host, self.config.local_port)
        try:
            with socket.create_connection(address, timeout=self.self_test_timeout):
                pass
        except OSError as e:
            raise EngineError(
                f"tunnel self-test to {address[0]}:{address[1]} failed: {e}"
            ) from e
        logger.debug("Tunnel self-test passed", local_port=self.config.local_port)

    def stop(self) -> None:
        if self._forwarder is None:
            return
        try:
            self._forwarder.stop()
        except (BaseSSHTunnelForwarderError, OSError) as e:
            raise EngineError(f"error stopping ssh tunnel: {e}") from e
        finally:
            self._forwarder = None

    def is_alive(self) -> bool:
        return self._forwarder is not None and bool(self._forwarder.is_active)


class SSHBackend(TunnelBackend):
    """Tunnel through an SSH bastion host."""

    tunnel_type = TunnelType.SSH

    def log_identity(self, config: SSHTunnelConfig) -> str:
        return config.ssh_host

    def preflight(self, config: SSHTunnelConfig) -> SSHTunnelConfig:
        """Resolve the SSH user and verify the key parses locally."""
        if config.ssh_key:
            load_private_key(config.ssh_key, config.ssh_key_passphrase)

        if config.ssh_user:
            return config
        return config.model_copy(update={"ssh_user": getpass.getuser()})

    def create_engine(self, descriptor: LaunchDescriptor) -> SSHForwardingEngine:
        payload = descriptor.payload
        if not isinstance(payload, SSHTunnelConfig):
            raise ConfigError(f"unexpected payload for ssh tunnel: {type(payload)}")
        return SSHForwardingEngine(payload, descriptor.self_test_timeout)
