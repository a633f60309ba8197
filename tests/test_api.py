"""Tests for high-level API functions."""

from unittest.mock import Mock, patch

import pytest

from tunnel_provider import (
    ConfigError,
    TunnelCloseError,
    managed_tunnel,
    open_kubernetes_tunnel,
    open_ssh_tunnel,
    open_ssm_tunnel,
    open_tunnel,
)
from tunnel_provider.api import build_config
from tunnel_provider.tunnels.models import (
    ClusterAccess,
    KubernetesTunnelConfig,
    SSHTunnelConfig,
    SSMTunnelConfig,
)


class TestBuildConfig:
    def test_valid(self):
        config = build_config(
            SSHTunnelConfig,
            ssh_host="bastion",
            ssh_password="pw",
            target_host="db",
            target_port=5432,
        )
        assert isinstance(config, SSHTunnelConfig)

    def test_invalid_becomes_config_error(self):
        with pytest.raises(ConfigError, match="invalid SSHTunnelConfig"):
            build_config(SSHTunnelConfig, ssh_host="bastion", target_port=5432)


class TestOpenFunctions:
    """Test the open_* helpers."""

    @patch("tunnel_provider.api.TunnelManager")
    def test_open_tunnel(self, mock_manager_class, ssh_config, settings):
        manager = mock_manager_class.return_value

        handle = open_tunnel(ssh_config, settings=settings, parent_pid=99)

        mock_manager_class.assert_called_once_with(settings)
        manager.open.assert_called_once_with(ssh_config, parent_pid=99)
        assert handle is manager.open.return_value

    @patch("tunnel_provider.api.TunnelManager")
    def test_open_tunnel_reads_env_settings(self, mock_manager_class, monkeypatch):
        monkeypatch.setenv("TUNNEL_PROVIDER_SSH_GRACE_PERIOD", "0.25")

        open_tunnel(Mock())

        settings = mock_manager_class.call_args[0][0]
        assert settings.ssh_grace_period == 0.25

    @patch("tunnel_provider.api.TunnelManager")
    def test_open_ssh_tunnel(self, mock_manager_class, settings):
        open_ssh_tunnel(
            "bastion",
            "db.internal",
            5432,
            ssh_key="/home/me/.ssh/id_ed25519",
            settings=settings,
        )

        config = mock_manager_class.return_value.open.call_args[0][0]
        assert config == SSHTunnelConfig(
            ssh_host="bastion",
            ssh_key="/home/me/.ssh/id_ed25519",
            target_host="db.internal",
            target_port=5432,
        )

    def test_open_ssh_tunnel_without_credentials(self, settings):
        with pytest.raises(ConfigError, match="one of ssh_password or ssh_key"):
            open_ssh_tunnel("bastion", "db.internal", 5432, settings=settings)

    @patch("tunnel_provider.api.TunnelManager")
    def test_open_ssm_tunnel(self, mock_manager_class, settings):
        open_ssm_tunnel(
            "i-1",
            "eu-west-1",
            "db.internal",
            5432,
            ssm_profile="dev",
            settings=settings,
        )

        config = mock_manager_class.return_value.open.call_args[0][0]
        assert isinstance(config, SSMTunnelConfig)
        assert config.ssm_profile == "dev"
        assert config.local_port == 0

    @patch("tunnel_provider.api.TunnelManager")
    def test_open_kubernetes_tunnel_with_dict(self, mock_manager_class, settings):
        open_kubernetes_tunnel(
            "default",
            "postgres",
            5432,
            kubernetes={"host": "https://k8s", "token": "abc"},
            settings=settings,
        )

        config = mock_manager_class.return_value.open.call_args[0][0]
        assert isinstance(config, KubernetesTunnelConfig)
        assert config.kubernetes == ClusterAccess(host="https://k8s", token="abc")


class TestManagedTunnel:
    """Test managed_tunnel context manager."""

    @patch("tunnel_provider.api.TunnelManager")
    def test_closes_on_exit(self, mock_manager_class, ssh_config, settings):
        manager = mock_manager_class.return_value.__enter__.return_value

        with managed_tunnel(ssh_config, settings=settings) as handle:
            assert handle is manager.open.return_value
            manager.close.assert_not_called()

        manager.close.assert_called_once_with(handle)

    @patch("tunnel_provider.api.TunnelManager")
    def test_closes_on_exception(self, mock_manager_class, ssh_config, settings):
        manager = mock_manager_class.return_value.__enter__.return_value

        with pytest.raises(RuntimeError):
            with managed_tunnel(ssh_config, settings=settings):
                raise RuntimeError("client failed")

        manager.close.assert_called_once()

    @patch("tunnel_provider.api.TunnelManager")
    def test_close_error_propagates(self, mock_manager_class, ssh_config, settings):
        manager = mock_manager_class.return_value.__enter__.return_value
        manager.close.side_effect = TunnelCloseError(["session expired"])

        with pytest.raises(TunnelCloseError, match="session expired"):
            with managed_tunnel(ssh_config, settings=settings):
                pass
