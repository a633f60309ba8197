"""AWS Systems Manager backend driving session-manager-plugin."""

import json
import os
import shutil
import subprocess
import threading
import time

import psutil

from ..common.exceptions import ConfigError, EngineError, PreflightError, SessionError
from ..common.logging import get_logger
from ..common.settings import LaunchSettings
from ..common.watchdog import interrupt
from ..tunnels.interfaces import EngineState, ForwardingEngine, TunnelBackend
from ..tunnels.models import (
    LaunchDescriptor,
    SSMSessionPayload,
    SSMTunnelConfig,
    TunnelRef,
    TunnelType,
)
from .ssm_sessions import SessionRegistry, session_request

logger = get_logger(__name__)

PLUGIN_BINARY = "session-manager-plugin"
SESSION_RESPONSE_ENV = "AWS_SSM_START_SESSION_RESPONSE"
READY_MARKER = "Waiting for connections"
DEFAULT_STARTUP_TIMEOUT = 30.0


def find_plugin() -> str:
    """Find session-manager-plugin in system PATH.

    Raises:
        PreflightError: If the plugin is not installed
    """
    plugin = shutil.which(PLUGIN_BINARY)
    if plugin is None:
        raise PreflightError(
            f"'{PLUGIN_BINARY}' not found in system PATH. Install it from "
            "https://docs.aws.amazon.com/systems-manager/latest/userguide/"
            "session-manager-working-with-install-plugin.html"
        )
    return plugin


class SSMForwardingEngine(ForwardingEngine):
    """Runs session-manager-plugin on an already started session."""

    def __init__(
        self,
        payload: SSMSessionPayload,
        shutdown_timeout: float = 5.0,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
    ):
        super().__init__(f"ssm:{payload.ssm_instance}:{payload.target_port}")
        self.payload = payload
        self.shutdown_timeout = shutdown_timeout
        self.startup_timeout = startup_timeout
        self._process: subprocess.Popen[str] | None = None
        self._reader: threading.Thread | None = None
        self._ready = threading.Event()

    def command(self) -> list[str]:
        """Plugin command line, in the order the AWS CLI passes it"""
        payload = self.payload
        request = session_request(
            payload.ssm_instance,
            payload.target_host,
            payload.target_port,
            payload.local_port,
        )
        return [
            payload.plugin_path,
            SESSION_RESPONSE_ENV,
            payload.session.region,
            "StartSession",
            payload.ssm_profile or "",
            json.dumps(request),
            payload.endpoint_url,
        ]

    def environment(self) -> dict[str, str]:
        """Plugin environment carrying the session response"""
        session = self.payload.session
        env = os.environ.copy()
        env[SESSION_RESPONSE_ENV] = json.dumps(
            {
                "SessionId": session.session_id,
                "TokenValue": session.token_value,
                "StreamUrl": session.stream_url,
            }
        )
        return env

    def _read_output(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        for line in process.stdout:
            line = line.rstrip()
            if not line:
                continue
            logger.info("session-manager-plugin", output=line)
            if READY_MARKER in line:
                self._ready.set()

    def start(self) -> None:
        payload = self.payload
        logger.info(
            "starting tunnel",
            local=f"{payload.local_host}:{payload.local_port}",
            instance=payload.ssm_instance,
            target=f"{payload.target_host}:{payload.target_port}",
            session_id=payload.session.session_id,
        )
        try:
            self._process = subprocess.Popen(
                self.command(),
                env=self.environment(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as e:
            raise EngineError(f"failed to run {PLUGIN_BINARY}: {e}") from e

        self._reader = threading.Thread(
            target=self._read_output, name="plugin-output", daemon=True
        )
        self._reader.start()

        deadline = time.monotonic() + self.startup_timeout
        while not self._ready.wait(0.1):
            returncode = self._process.poll()
            if returncode is not None:
                raise EngineError(f"{PLUGIN_BINARY} exited with status {returncode}")
            if time.monotonic() > deadline:
                raise EngineError(
                    f"{PLUGIN_BINARY} not ready after {self.startup_timeout}s"
                )

        self._emit(EngineState.STARTED)

    def stop(self) -> None:
        process = self._process
        if process is None or process.poll() is not None:
            return

        logger.info("Stopping session plugin", pid=process.pid)
        try:
            interrupt(process.pid)
        except psutil.NoSuchProcess:
            return
        except psutil.Error as e:
            raise EngineError(f"failed to interrupt {PLUGIN_BINARY}: {e}") from e

        try:
            process.wait(timeout=self.shutdown_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Plugin did not stop gracefully, terminating", pid=process.pid
            )
            process.terminate()
            process.wait(timeout=self.shutdown_timeout)

    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None


class SSMBackend(TunnelBackend):
    """Tunnel through AWS Systems Manager Session Manager."""

    tunnel_type = TunnelType.SSM

    def __init__(
        self,
        settings: LaunchSettings | None = None,
        sessions: SessionRegistry | None = None,
    ):
        super().__init__(settings)
        self.sessions = sessions or SessionRegistry()

    def log_identity(self, config: SSMTunnelConfig) -> str:
        return config.ssm_instance

    def preflight(self, config: SSMTunnelConfig) -> SSMSessionPayload:
        """Check the plugin is installed and start the remote session."""
        plugin_path = find_plugin()
        session = self.sessions.start(config)
        endpoint_url = self.sessions.endpoint_url(
            config.ssm_region, config.ssm_profile, config.ssm_role_arn
        )
        return SSMSessionPayload(
            session=session,
            ssm_instance=config.ssm_instance,
            ssm_profile=config.ssm_profile,
            target_host=config.target_host,
            target_port=config.target_port,
            local_host=config.local_host,
            local_port=config.local_port,
            endpoint_url=endpoint_url,
            plugin_path=plugin_path,
        )

    def create_engine(self, descriptor: LaunchDescriptor) -> SSMForwardingEngine:
        payload = descriptor.payload
        if not isinstance(payload, SSMSessionPayload):
            raise ConfigError(f"unexpected payload for ssm tunnel: {type(payload)}")
        return SSMForwardingEngine(payload, descriptor.shutdown_timeout)

    def handle_fields(
        self, config: SSMTunnelConfig, payload: SSMSessionPayload
    ) -> dict[str, str | None]:
        return {
            "session_id": payload.session.session_id,
            "region": payload.session.region,
            "ssm_profile": config.ssm_profile,
            "ssm_role_arn": config.ssm_role_arn,
        }

    def abort(self, config: SSMTunnelConfig, payload: SSMSessionPayload) -> None:
        """Terminate the session started for a worker that never came up."""
        self.sessions.terminate(
            payload.session.session_id,
            payload.session.region,
            config.ssm_profile,
            config.ssm_role_arn,
        )

    def teardown(self, ref: TunnelRef) -> None:
        if not ref.session_id:
            logger.debug("No session to terminate", pid=ref.pid)
            return
        if not ref.region:
            raise SessionError(
                f"region is required to terminate session {ref.session_id}"
            )
        self.sessions.terminate(
            ref.session_id, ref.region, ref.ssm_profile, ref.ssm_role_arn
        )
