"""Kubernetes backend: port forward to a pod selected by a service."""

import socket
import threading

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.stream import portforward

from ..common.exceptions import (
    ConfigError,
    EngineError,
    NoPodsFoundError,
    PreflightError,
)
from ..common.logging import get_logger
from ..tunnels.interfaces import EngineState, ForwardingEngine, TunnelBackend
from ..tunnels.models import (
    KubernetesPodPayload,
    KubernetesTunnelConfig,
    LaunchDescriptor,
    TunnelType,
)
from .forwarding import ForwardingServer
from .kubeconfig import build_api_client

logger = get_logger(__name__)


def format_label_selector(selector: dict[str, str]) -> str:
    """Render match labels as a label selector string, keys sorted"""
    return ",".join(f"{key}={selector[key]}" for key in sorted(selector))


def select_pod(api: client.CoreV1Api, namespace: str, service_name: str) -> str:
    """Pick the first pod behind a service, in list order.

    Raises:
        PreflightError: If the service cannot be read or has no selector
        NoPodsFoundError: If the selector matches no pods
    """
    try:
        service = api.read_namespaced_service(service_name, namespace)
    except (ApiException, urllib3.exceptions.HTTPError) as e:
        raise PreflightError(f"failed to get service {service_name}: {e}") from e

    selector = service.spec.selector if service.spec else None
    if not selector:
        raise PreflightError(f"service {namespace}/{service_name} has no selector")

    label_selector = format_label_selector(selector)
    try:
        pods = api.list_namespaced_pod(namespace, label_selector=label_selector)
    except (ApiException, urllib3.exceptions.HTTPError) as e:
        raise PreflightError(
            f"failed to list pods for service {service_name}: {e}"
        ) from e

    if not pods.items:
        raise NoPodsFoundError(f"no pods found for service {service_name}")

    pod_name: str = pods.items[0].metadata.name
    logger.info(
        "Selected pod",
        namespace=namespace,
        service=service_name,
        pod=pod_name,
        selector=label_selector,
    )
    return pod_name


class KubernetesForwardingEngine(ForwardingEngine):
    """Local listener whose connections each open a pod port-forward stream."""

    def __init__(
        self,
        payload: KubernetesPodPayload,
        shutdown_timeout: float = 5.0,
        api_client: client.ApiClient | None = None,
    ):
        config = payload.config
        super().__init__(f"kubernetes:{config.namespace}/{payload.pod_name}")
        self.config = config
        self.pod_name = payload.pod_name
        self.shutdown_timeout = shutdown_timeout
        self._api_client = api_client
        self._core: client.CoreV1Api | None = None
        self._server: ForwardingServer | None = None
        self._thread: threading.Thread | None = None

    def open_stream(self) -> socket.socket:
        """Open one port-forward stream to the pod's target port.

        Raises:
            EngineError: If the stream cannot be established
        """
        if self._core is None:
            raise EngineError("kubernetes engine is not started")

        port = self.config.target_port
        try:
            forward = portforward(
                self._core.connect_get_namespaced_pod_portforward,
                self.pod_name,
                self.config.namespace,
                ports=str(port),
            )
            sock: socket.socket = forward.socket(port)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            raise EngineError(
                f"failed to open port forward to {self.pod_name}:{port}: {e}"
            ) from e

        sock.setblocking(True)
        return sock

    def start(self) -> None:
        config = self.config
        logger.info(
            "starting tunnel",
            local=f"{config.local_host}:{config.local_port}",
            pod=f"{config.namespace}/{self.pod_name}",
            target_port=config.target_port,
        )
        if self._api_client is None:
            self._api_client = build_api_client(config.kubernetes)
        self._core = client.CoreV1Api(self._api_client)

        # Pod must accept a port-forward stream before the tunnel is ready
        self.open_stream().close()
        logger.debug("Pod port forward verified", pod=self.pod_name)

        try:
            self._server = ForwardingServer(
                (config.local_host, config.local_port), self.open_stream
            )
        except OSError as e:
            raise EngineError(
                f"failed to listen on {config.local_host}:{config.local_port}: {e}"
            ) from e

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name=f"port-forward-{config.local_port}",
            daemon=True,
        )
        self._thread.start()
        logger.info("port forwarding is ready", pod=self.pod_name)
        self._emit(EngineState.STARTED)

    def stop(self) -> None:
        server = self._server
        if server is None:
            return

        server.shutdown()
        server.drain(self.shutdown_timeout)
        server.server_close()
        self._server = None
        if self._thread is not None:
            self._thread.join(timeout=self.shutdown_timeout)
            self._thread = None

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class KubernetesBackend(TunnelBackend):
    """Port forward to the first pod behind a Kubernetes service."""

    tunnel_type = TunnelType.KUBERNETES

    def log_identity(self, config: KubernetesTunnelConfig) -> str:
        return f"{config.namespace}-{config.service_name}"

    def preflight(self, config: KubernetesTunnelConfig) -> KubernetesPodPayload:
        """Resolve the service to a pod with the front end's credentials."""
        api = client.CoreV1Api(build_api_client(config.kubernetes))
        pod_name = select_pod(api, config.namespace, config.service_name)
        return KubernetesPodPayload(config=config, pod_name=pod_name)

    def create_engine(
        self, descriptor: LaunchDescriptor
    ) -> KubernetesForwardingEngine:
        payload = descriptor.payload
        if not isinstance(payload, KubernetesPodPayload):
            raise ConfigError(
                f"unexpected payload for kubernetes tunnel: {type(payload)}"
            )
        return KubernetesForwardingEngine(payload, descriptor.shutdown_timeout)
