"""Session Manager sessions opened by the front end.

A port forwarding session is started with the AWS SDK before any worker
exists. The worker only receives the session response and hands it to
``session-manager-plugin``. Closing a tunnel terminates the session through
the same registry.
"""

import threading
import time
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..common.exceptions import PreflightError, SessionError
from ..common.logging import get_logger
from ..tunnels.models import RemoteSession, SSMTunnelConfig

logger = get_logger(__name__)

PORT_FORWARDING_DOCUMENT = "AWS-StartPortForwardingSessionToRemoteHost"

ClientKey = tuple[str, str | None, str | None]


def create_boto_session(
    region: str, profile: str | None = None, role_arn: str | None = None
) -> boto3.Session:
    """Build an AWS session, assuming ``role_arn`` through STS when given.

    Raises:
        BotoCoreError: If credentials or the profile cannot be resolved
        ClientError: If the role cannot be assumed
    """
    session = boto3.Session(profile_name=profile, region_name=region)
    if not role_arn:
        return session

    response = session.client("sts").assume_role(
        RoleArn=role_arn, RoleSessionName=f"tunnel-provider-{int(time.time())}"
    )
    credentials = response["Credentials"]
    return boto3.Session(
        aws_access_key_id=credentials["AccessKeyId"],
        aws_secret_access_key=credentials["SecretAccessKey"],
        aws_session_token=credentials["SessionToken"],
        region_name=region,
    )


def session_request(
    ssm_instance: str, target_host: str, target_port: int, local_port: int
) -> dict[str, Any]:
    """StartSession parameters for port forwarding to a remote host"""
    return {
        "Target": ssm_instance,
        "DocumentName": PORT_FORWARDING_DOCUMENT,
        "Parameters": {
            "portNumber": [str(target_port)],
            "localPortNumber": [str(local_port)],
            "host": [target_host],
        },
    }


class SessionRegistry:
    """Starts and terminates Session Manager sessions, one SSM client per identity."""

    def __init__(self, session_factory: Any = create_boto_session):
        self._session_factory = session_factory
        self._clients: dict[ClientKey, Any] = {}
        self._sessions: dict[str, RemoteSession] = {}
        self._lock = threading.Lock()

    def client(
        self, region: str, profile: str | None = None, role_arn: str | None = None
    ) -> Any:
        """SSM client for an identity, created on first use.

        Raises:
            BotoCoreError: If credentials or the profile cannot be resolved
            ClientError: If the role cannot be assumed
        """
        key = (region, profile, role_arn)
        with self._lock:
            if key not in self._clients:
                session = self._session_factory(region, profile, role_arn)
                self._clients[key] = session.client("ssm", region_name=region)
            return self._clients[key]

    def endpoint_url(
        self, region: str, profile: str | None = None, role_arn: str | None = None
    ) -> str:
        """Regional SSM endpoint handed to the session plugin"""
        endpoint: str = self.client(region, profile, role_arn).meta.endpoint_url
        return endpoint

    def start(self, config: SSMTunnelConfig) -> RemoteSession:
        """Start a port forwarding session for a tunnel.

        Raises:
            PreflightError: If the session cannot be started
        """
        request = session_request(
            config.ssm_instance,
            config.target_host,
            config.target_port,
            config.local_port,
        )
        try:
            client = self.client(
                config.ssm_region, config.ssm_profile, config.ssm_role_arn
            )
            response = client.start_session(**request)
        except (BotoCoreError, ClientError) as e:
            raise PreflightError(
                f"failed to start session on {config.ssm_instance}: {e}"
            ) from e

        session = RemoteSession(
            session_id=response["SessionId"],
            token_value=response["TokenValue"],
            stream_url=response["StreamUrl"],
            region=config.ssm_region,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info(
            "Started session",
            session_id=session.session_id,
            instance=config.ssm_instance,
            region=config.ssm_region,
        )
        return session

    def terminate(
        self,
        session_id: str,
        region: str,
        profile: str | None = None,
        role_arn: str | None = None,
    ) -> None:
        """Terminate a session.

        Raises:
            SessionError: If the session cannot be terminated
        """
        try:
            self.client(region, profile, role_arn).terminate_session(
                SessionId=session_id
            )
        except (BotoCoreError, ClientError) as e:
            raise SessionError(f"failed to terminate session {session_id}: {e}") from e

        with self._lock:
            self._sessions.pop(session_id, None)
        logger.info("Terminated session", session_id=session_id, region=region)

    def active_sessions(self) -> list[RemoteSession]:
        """Sessions started and not yet terminated by this registry"""
        with self._lock:
            return list(self._sessions.values())
