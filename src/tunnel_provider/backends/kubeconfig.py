"""Build a Kubernetes API client from kubeconfig files plus explicit overrides.

Files are merged by the client library's ``KubeConfigMerger``, the way kubectl
merges ``KUBECONFIG``: the first file that defines a cluster, context or user
wins, and so does the first ``current-context``. Every merged entry remembers
the file it came from, so relative certificate, key and exec command paths
resolve against that file's directory. Explicit ``ClusterAccess`` values are
then applied on top of the selected context. Empty values never override
kubeconfig.
"""

import base64
import os
from pathlib import Path
from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from kubernetes.config.kube_config import (
    ENV_KUBECONFIG_PATH_SEPARATOR,
    ConfigNode,
    KubeConfigLoader,
    KubeConfigMerger,
)

from ..common.exceptions import PreflightError
from ..common.logging import get_logger
from ..tunnels.models import ClusterAccess

logger = get_logger(__name__)

DEFAULT_KUBECONFIG = "~/.kube/config"
SYNTHETIC_NAME = "tunnel-provider"

_NAMED_SECTIONS = ("clusters", "contexts", "users")


def kubeconfig_paths(access: ClusterAccess) -> list[Path]:
    """Kubeconfig files to load, in precedence order.

    Missing and zero-length files are skipped, as kubectl does.
    """
    if access.config_paths:
        candidates = list(access.config_paths)
    elif access.config_path:
        candidates = [access.config_path]
    elif os.environ.get("KUBECONFIG"):
        candidates = os.environ["KUBECONFIG"].split(os.pathsep)
    else:
        candidates = [DEFAULT_KUBECONFIG]

    paths = [Path(p).expanduser() for p in candidates if p]
    return [p for p in paths if p.is_file() and p.stat().st_size > 0]


def merge_kubeconfigs(paths: list[Path]) -> ConfigNode:
    """Merge kubeconfig files with first-wins semantics.

    Raises:
        PreflightError: If a file cannot be read or parsed
    """
    if not paths:
        return ConfigNode("kube-config", {name: [] for name in _NAMED_SECTIONS})

    try:
        merger = KubeConfigMerger(
            ENV_KUBECONFIG_PATH_SEPARATOR.join(str(p) for p in paths)
        )
    except (OSError, yaml.YAMLError, ConfigException) as e:
        raise PreflightError(f"failed to load kubeconfig: {e}") from e
    except (TypeError, AttributeError) as e:
        raise PreflightError(f"failed to load kubeconfig: malformed file: {e}") from e

    merged: ConfigNode = merger.config
    # The merger lets the last file's current-context win; kubectl keeps the first
    current = next(
        (
            data["current-context"]
            for data in merger.config_files.values()
            if data.get("current-context")
        ),
        None,
    )
    merged.value.pop("current-context", None)
    if current:
        merged.value["current-context"] = current
    return merged


def find_entry(
    kubeconfig: ConfigNode, section: str, name: str
) -> dict[str, Any] | None:
    """Return the raw mapping of a named cluster, context or user."""
    for entry in kubeconfig.value.setdefault(section, []):
        data = entry.value if isinstance(entry, ConfigNode) else entry
        if data.get("name") == name:
            return data  # type: ignore[no-any-return]
    return None


def _add_entry(kubeconfig: ConfigNode, section: str, entry: dict[str, Any]) -> None:
    kubeconfig.value.setdefault(section, []).append(entry)


def _b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def apply_overrides(kubeconfig: ConfigNode, access: ClusterAccess) -> str:
    """Apply explicit settings to the selected context in place.

    Returns:
        Name of the context to load

    Raises:
        PreflightError: If an explicitly requested context does not exist or
            no API server is configured
    """
    context_name = access.config_context or kubeconfig.value.get("current-context")
    context_entry = None
    if context_name:
        context_entry = find_entry(kubeconfig, "contexts", context_name)

    if context_entry is None:
        if access.config_context:
            raise PreflightError(f"context {access.config_context!r} not found")
        context_name = SYNTHETIC_NAME
        context_entry = {"name": SYNTHETIC_NAME, "context": {}}
        _add_entry(kubeconfig, "contexts", context_entry)

    context = context_entry.setdefault("context", {})
    if access.config_context_cluster:
        context["cluster"] = access.config_context_cluster
    if access.config_context_auth_info:
        context["user"] = access.config_context_auth_info
    context.setdefault("cluster", SYNTHETIC_NAME)
    context.setdefault("user", SYNTHETIC_NAME)

    cluster_entry = find_entry(kubeconfig, "clusters", context["cluster"])
    if cluster_entry is None:
        cluster_entry = {"name": context["cluster"], "cluster": {}}
        _add_entry(kubeconfig, "clusters", cluster_entry)
    cluster = cluster_entry.setdefault("cluster", {})

    user_entry = find_entry(kubeconfig, "users", context["user"])
    if user_entry is None:
        user_entry = {"name": context["user"], "user": {}}
        _add_entry(kubeconfig, "users", user_entry)
    user = user_entry.setdefault("user", {})

    if access.host:
        cluster["server"] = access.host
    if access.cluster_ca_certificate:
        cluster.pop("certificate-authority", None)
        cluster["certificate-authority-data"] = _b64(access.cluster_ca_certificate)
    if access.insecure:
        cluster["insecure-skip-tls-verify"] = True
    if access.tls_server_name:
        cluster["tls-server-name"] = access.tls_server_name

    if access.token:
        user["token"] = access.token
    if access.username:
        user["username"] = access.username
    if access.password:
        user["password"] = access.password
    if access.client_certificate:
        user.pop("client-certificate", None)
        user["client-certificate-data"] = _b64(access.client_certificate)
    if access.client_key:
        user.pop("client-key", None)
        user["client-key-data"] = _b64(access.client_key)
    if access.exec is not None:
        user["exec"] = {
            "apiVersion": access.exec.api_version,
            "command": access.exec.command,
            "args": list(access.exec.args or []),
            "env": [
                {"name": name, "value": value}
                for name, value in (access.exec.env or {}).items()
            ],
            "interactiveMode": "IfAvailable",
        }

    if not cluster.get("server"):
        raise PreflightError(f"no API server configured for context {context_name!r}")

    kubeconfig.value["current-context"] = context_name
    return context_name


def _in_cluster() -> bool:
    return bool(os.environ.get("KUBERNETES_SERVICE_HOST"))


def build_api_client(access: ClusterAccess | None = None) -> client.ApiClient:
    """Create an API client for the cluster described by ``access``.

    Raises:
        PreflightError: If no usable configuration is found
    """
    access = access or ClusterAccess()
    configuration = client.Configuration()
    paths = kubeconfig_paths(access)

    try:
        if not paths and not access.host and _in_cluster():
            logger.debug("Using in-cluster configuration")
            config.load_incluster_config(client_configuration=configuration)
        else:
            kubeconfig = merge_kubeconfigs(paths)
            context_name = apply_overrides(kubeconfig, access)
            loader = KubeConfigLoader(
                config_dict=kubeconfig,
                active_context=context_name,
                config_base_path=None,
            )
            loader.load_and_set(configuration)
    except (ConfigException, ValueError) as e:
        raise PreflightError(f"failed to load kubeconfig: {e}") from e

    if access.proxy_url:
        configuration.proxy = access.proxy_url

    logger.debug(
        "Kubernetes client configured",
        host=configuration.host,
        files=[str(p) for p in paths],
    )
    return client.ApiClient(configuration)
