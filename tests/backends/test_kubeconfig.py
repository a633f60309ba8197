"""Tests for kubeconfig merging and explicit overrides."""

import base64
import os
from unittest.mock import patch

import pytest
import yaml

from tunnel_provider.backends.kubeconfig import (
    SYNTHETIC_NAME,
    apply_overrides,
    build_api_client,
    find_entry,
    kubeconfig_paths,
    merge_kubeconfigs,
)
from tunnel_provider.common.exceptions import PreflightError
from tunnel_provider.tunnels.models import ClusterAccess, ExecConfig


def kubeconfig(name, server, current=True, token="file-token"):
    data = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": name, "cluster": {"server": server}}],
        "users": [{"name": name, "user": {"token": token}}],
        "contexts": [{"name": name, "context": {"cluster": name, "user": name}}],
    }
    if current:
        data["current-context"] = name
    return data


@pytest.fixture
def write_config(tmp_path):
    def write(filename, data):
        path = tmp_path / filename
        path.write_text(yaml.safe_dump(data))
        return path

    return write


class TestKubeconfigPaths:
    """Test kubeconfig file discovery."""

    def test_config_paths_win(self, write_config, monkeypatch):
        first = write_config("a.yaml", kubeconfig("a", "https://a"))
        second = write_config("b.yaml", kubeconfig("b", "https://b"))
        monkeypatch.setenv("KUBECONFIG", "/nonexistent")

        paths = kubeconfig_paths(
            ClusterAccess(config_paths=[str(first), str(second)], config_path="x")
        )

        assert paths == [first, second]

    def test_single_config_path(self, write_config):
        path = write_config("a.yaml", kubeconfig("a", "https://a"))
        assert kubeconfig_paths(ClusterAccess(config_path=str(path))) == [path]

    def test_kubeconfig_env(self, write_config, monkeypatch):
        first = write_config("a.yaml", kubeconfig("a", "https://a"))
        second = write_config("b.yaml", kubeconfig("b", "https://b"))
        monkeypatch.setenv("KUBECONFIG", os.pathsep.join([str(first), str(second)]))

        assert kubeconfig_paths(ClusterAccess()) == [first, second]

    def test_missing_files_skipped(self, tmp_path):
        access = ClusterAccess(config_paths=[str(tmp_path / "missing.yaml")])
        assert kubeconfig_paths(access) == []


class TestMergeKubeconfigs:
    """Test first-wins merging."""

    def test_first_definition_wins(self, write_config):
        first = write_config("a.yaml", kubeconfig("shared", "https://first"))
        second_data = kubeconfig("shared", "https://second", current=False)
        second_data["clusters"].append(
            {"name": "extra", "cluster": {"server": "https://extra"}}
        )
        second = write_config("b.yaml", second_data)

        merged = merge_kubeconfigs([first, second])

        assert find_entry(merged, "clusters", "shared")["cluster"]["server"] == (
            "https://first"
        )
        assert find_entry(merged, "clusters", "extra")["cluster"]["server"] == (
            "https://extra"
        )
        assert merged.value["current-context"] == "shared"

    def test_first_current_context_wins(self, write_config):
        first = write_config("a.yaml", kubeconfig("a", "https://a", current=False))
        second = write_config("b.yaml", kubeconfig("b", "https://b"))
        third = write_config("c.yaml", kubeconfig("c", "https://c"))

        merged = merge_kubeconfigs([first, second, third])

        assert merged.value["current-context"] == "b"

    def test_empty_file_is_skipped(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert kubeconfig_paths(ClusterAccess(config_path=str(path))) == []

    def test_blank_file(self, tmp_path):
        path = tmp_path / "blank.yaml"
        path.write_text("\n# nothing here\n")

        with pytest.raises(PreflightError, match="failed to load kubeconfig"):
            merge_kubeconfigs([path])

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("clusters: [unclosed")

        with pytest.raises(PreflightError, match="failed to load kubeconfig"):
            merge_kubeconfigs([path])

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(PreflightError, match="failed to load kubeconfig"):
            merge_kubeconfigs([path])


class TestApplyOverrides:
    """Test explicit settings applied on top of kubeconfig."""

    @pytest.fixture
    def merged(self, write_config):
        return merge_kubeconfigs([write_config("a.yaml", kubeconfig("a", "https://a"))])

    def test_no_overrides_keeps_current_context(self, merged):
        assert apply_overrides(merged, ClusterAccess()) == "a"
        assert find_entry(merged, "clusters", "a")["cluster"] == {"server": "https://a"}

    def test_host_and_token_override(self, merged):
        apply_overrides(merged, ClusterAccess(host="https://b", token="explicit"))

        assert find_entry(merged, "clusters", "a")["cluster"]["server"] == "https://b"
        assert find_entry(merged, "users", "a")["user"]["token"] == "explicit"

    def test_empty_values_do_not_override(self, merged):
        apply_overrides(merged, ClusterAccess(host="", token="", insecure=False))

        cluster = find_entry(merged, "clusters", "a")["cluster"]
        assert cluster == {"server": "https://a"}
        assert find_entry(merged, "users", "a")["user"]["token"] == "file-token"

    def test_pem_fields_become_data(self, merged):
        find_entry(merged, "users", "a")["user"]["client-certificate"] = "cert.pem"
        access = ClusterAccess(
            cluster_ca_certificate="CA PEM",
            client_certificate="CERT PEM",
            client_key="KEY PEM",
            insecure=True,
            tls_server_name="api.internal",
        )

        apply_overrides(merged, access)

        cluster = find_entry(merged, "clusters", "a")["cluster"]
        user = find_entry(merged, "users", "a")["user"]
        assert base64.b64decode(cluster["certificate-authority-data"]) == b"CA PEM"
        assert cluster["insecure-skip-tls-verify"] is True
        assert cluster["tls-server-name"] == "api.internal"
        assert base64.b64decode(user["client-certificate-data"]) == b"CERT PEM"
        assert base64.b64decode(user["client-key-data"]) == b"KEY PEM"
        assert "client-certificate" not in user

    def test_exec_plugin(self, merged):
        access = ClusterAccess(
            exec=ExecConfig(
                api_version="client.authentication.k8s.io/v1beta1",
                command="aws",
                args=["eks", "get-token"],
                env={"AWS_PROFILE": "dev"},
            )
        )

        apply_overrides(merged, access)

        exec_config = find_entry(merged, "users", "a")["user"]["exec"]
        assert exec_config == {
            "apiVersion": "client.authentication.k8s.io/v1beta1",
            "command": "aws",
            "args": ["eks", "get-token"],
            "env": [{"name": "AWS_PROFILE", "value": "dev"}],
            "interactiveMode": "IfAvailable",
        }

    def test_context_cluster_and_user_override(self, write_config):
        first = kubeconfig("a", "https://a")
        first["clusters"].append({"name": "b", "cluster": {"server": "https://b"}})
        merged = merge_kubeconfigs([write_config("a.yaml", first)])

        apply_overrides(
            merged,
            ClusterAccess(config_context_cluster="b", config_context_auth_info="ci"),
        )

        context = find_entry(merged, "contexts", "a")["context"]
        assert context == {"cluster": "b", "user": "ci"}
        assert find_entry(merged, "users", "ci") == {"name": "ci", "user": {}}

    def test_missing_explicit_context(self, merged):
        with pytest.raises(PreflightError, match="context 'other' not found"):
            apply_overrides(merged, ClusterAccess(config_context="other"))

    def test_synthetic_context_without_files(self):
        merged = merge_kubeconfigs([])

        name = apply_overrides(
            merged, ClusterAccess(host="https://k8s", token="abc")
        )

        assert name == SYNTHETIC_NAME
        assert merged.value["current-context"] == SYNTHETIC_NAME
        assert find_entry(merged, "clusters", SYNTHETIC_NAME)["cluster"] == {
            "server": "https://k8s"
        }
        assert find_entry(merged, "users", SYNTHETIC_NAME)["user"] == {"token": "abc"}


class TestBuildApiClient:
    """Test API client construction."""

    def test_explicit_host_and_token(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KUBECONFIG", str(tmp_path / "missing"))

        api_client = build_api_client(
            ClusterAccess(
                host="https://k8s.example.com",
                token="abc123",
                proxy_url="http://proxy:3128",
            )
        )

        configuration = api_client.configuration
        assert configuration.host == "https://k8s.example.com"
        assert configuration.api_key["authorization"] == "Bearer abc123"
        assert configuration.proxy == "http://proxy:3128"

    def test_from_file_context(self, write_config):
        path = write_config("a.yaml", kubeconfig("a", "https://a.example.com"))

        api_client = build_api_client(ClusterAccess(config_path=str(path)))

        assert api_client.configuration.host == "https://a.example.com"

    def test_in_cluster(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KUBECONFIG", str(tmp_path / "missing"))
        monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")

        with patch(
            "tunnel_provider.backends.kubeconfig.config.load_incluster_config"
        ) as load:
            build_api_client()

        load.assert_called_once()

    def test_no_configuration(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KUBECONFIG", str(tmp_path / "missing"))
        monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)

        with pytest.raises(PreflightError, match="no API server configured"):
            build_api_client()

    def test_relative_paths_resolve_against_file(self, tmp_path, monkeypatch):
        kube_dir = tmp_path / "kube"
        kube_dir.mkdir()
        (kube_dir / "ca.crt").write_text("CA PEM")
        data = kubeconfig("a", "https://a.example.com")
        data["clusters"][0]["cluster"]["certificate-authority"] = "ca.crt"
        path = kube_dir / "config"
        path.write_text(yaml.safe_dump(data))
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)

        api_client = build_api_client(ClusterAccess(config_path=str(path)))

        assert api_client.configuration.ssl_ca_cert == str(kube_dir / "ca.crt")

    def test_relative_paths_follow_their_own_file(self, tmp_path, monkeypatch):
        first_dir = tmp_path / "first"
        second_dir = tmp_path / "second"
        first_dir.mkdir()
        second_dir.mkdir()
        (second_dir / "ca.crt").write_text("CA PEM")
        first = kubeconfig("a", "https://a.example.com")
        first["contexts"][0]["context"]["cluster"] = "b"
        second = kubeconfig("b", "https://b.example.com", current=False)
        second["clusters"][0]["cluster"]["certificate-authority"] = "ca.crt"
        (first_dir / "config").write_text(yaml.safe_dump(first))
        (second_dir / "config").write_text(yaml.safe_dump(second))
        monkeypatch.chdir(tmp_path)

        api_client = build_api_client(
            ClusterAccess(
                config_paths=[str(first_dir / "config"), str(second_dir / "config")]
            )
        )

        assert api_client.configuration.host == "https://b.example.com"
        assert api_client.configuration.ssl_ca_cert == str(second_dir / "ca.crt")
