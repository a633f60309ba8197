"""Shared pytest fixtures for tunnel provider tests."""

import logging
from unittest.mock import Mock

import pytest
import structlog

from tunnel_provider.common.settings import LaunchSettings
from tunnel_provider.tunnels.models import (
    ClusterAccess,
    KubernetesPodPayload,
    KubernetesTunnelConfig,
    LaunchDescriptor,
    RemoteSession,
    SSHTunnelConfig,
    SSMSessionPayload,
    SSMTunnelConfig,
)


@pytest.fixture
def settings(tmp_path):
    """Launch settings writing logs under a temporary directory.

    Returns:
        LaunchSettings: Settings with short grace windows
    """
    return LaunchSettings(
        log_dir=tmp_path / "logs",
        ssh_grace_period=0.1,
        ssm_grace_period=0.1,
        kubernetes_grace_period=0.1,
        shutdown_timeout=1.0,
    )


@pytest.fixture
def ssh_config():
    """SSH tunnel config authenticating with a password."""
    return SSHTunnelConfig(
        ssh_host="bastion.example.com",
        ssh_user="deploy",
        ssh_password="s3cret",
        target_host="db.internal",
        target_port=5432,
        local_port=15432,
    )


@pytest.fixture
def ssm_config():
    """SSM tunnel config for a managed instance."""
    return SSMTunnelConfig(
        ssm_instance="i-0123456789abcdef0",
        ssm_region="eu-west-1",
        target_host="db.internal",
        target_port=5432,
        local_port=15433,
    )


@pytest.fixture
def kubernetes_config():
    """Kubernetes tunnel config pointing at an explicit API server."""
    return KubernetesTunnelConfig(
        namespace="default",
        service_name="postgres",
        target_port=5432,
        local_port=15434,
        kubernetes=ClusterAccess(host="https://k8s.example.com", token="abc123"),
    )


@pytest.fixture
def remote_session():
    """Session returned by StartSession."""
    return RemoteSession(
        session_id="user-0a1b2c3d4e5f",
        token_value="token-value",
        stream_url="wss://ssmmessages.eu-west-1.amazonaws.com/v1/data-channel/x",
        region="eu-west-1",
    )


@pytest.fixture
def ssm_payload(remote_session):
    """Worker payload for an SSM tunnel."""
    return SSMSessionPayload(
        session=remote_session,
        ssm_instance="i-0123456789abcdef0",
        target_host="db.internal",
        target_port=5432,
        local_port=15433,
        endpoint_url="https://ssm.eu-west-1.amazonaws.com",
        plugin_path="/usr/local/bin/session-manager-plugin",
    )


@pytest.fixture
def kubernetes_payload(kubernetes_config):
    """Worker payload for a Kubernetes tunnel."""
    return KubernetesPodPayload(config=kubernetes_config, pod_name="postgres-0")


@pytest.fixture
def ssh_descriptor(ssh_config, settings):
    """Launch descriptor for an SSH worker."""
    return LaunchDescriptor.from_settings(ssh_config, settings)


@pytest.fixture
def mock_process():
    """Create a mock Popen object for a running worker.

    Returns:
        Mock: Mock process with common attributes
    """
    process = Mock()
    process.pid = 12345
    process.poll.return_value = None  # Process is running
    process.wait.return_value = 0
    return process


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset structlog and root handlers after each test.

    This prevents tests from interfering with each other's logging setup.
    """
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
