"""Forwarding a local port to a pod, reconnecting until asked to stop."""

from __future__ import annotations

import contextlib
import socket
import ssl
import threading
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import urlparse, urlunparse

import websocket

from .kube import KubeError, RestConfig

RECONNECT_DELAY = 0.3
_PROTOCOL = "v4.channel.k8s.io"
_DATA_CHANNEL = 0
_ERROR_CHANNEL = 1


class PortForwarder(ABC):
    """Forwards a local port to a remote pod port."""

    @abstractmethod
    def forward_ports(self) -> None:
        """Block while forwarding; return or raise when forwarding ends."""


class PortForwarderFactory(ABC):
    """Creates PortForwarder instances."""

    @abstractmethod
    def create_port_forwarder(
        self,
        stop_event: threading.Event,
        namespace: str,
        pod_name: str,
        local_port: int,
        remote_port: int,
    ) -> PortForwarder:
        """Return a forwarder for one pod."""


class WebSocketPortForwarder(PortForwarder):
    """Forwards each accepted local connection over a pod port-forward websocket."""

    def __init__(
        self,
        url: str,
        rest_config: RestConfig,
        local_port: int,
        stop_event: threading.Event,
    ) -> None:
        self.url = url
        self.rest_config = rest_config
        self.local_port = local_port
        self.stop_event = stop_event

    def _open_websocket(self) -> websocket.WebSocket:
        rc = self.rest_config
        ca, cert, key = rc.tls_paths()
        sslopt: dict[str, Any] = {}
        if rc.insecure_skip_tls_verify:
            sslopt["cert_reqs"] = ssl.CERT_NONE
        elif ca:
            sslopt["ca_certs"] = ca
        if cert and key:
            sslopt["certfile"] = cert
            sslopt["keyfile"] = key
        headers = [f"{k}: {v}" for k, v in rc.auth_headers().items()]
        return websocket.create_connection(
            self.url, header=headers, subprotocols=[_PROTOCOL], sslopt=sslopt
        )

    def _pump_remote(self, ws: websocket.WebSocket, conn: socket.socket) -> None:
        seen: set[int] = set()
        try:
            while True:
                _opcode, data = ws.recv_data()
                if not data:
                    break
                channel, payload = data[0], data[1:]
                if channel not in seen:
                    seen.add(channel)
                    payload = payload[2:]
                if channel == _DATA_CHANNEL and payload:
                    conn.sendall(payload)
                elif channel == _ERROR_CHANNEL and payload:
                    break
        except (websocket.WebSocketException, OSError):
            pass
        finally:
            with contextlib.suppress(OSError):
                conn.shutdown(socket.SHUT_RDWR)

    def _handle(self, conn: socket.socket) -> None:
        with conn:
            try:
                ws = self._open_websocket()
            except (websocket.WebSocketException, OSError):
                return
            reader = threading.Thread(target=self._pump_remote, args=(ws, conn), daemon=True)
            reader.start()
            try:
                while chunk := conn.recv(32768):
                    ws.send_binary(bytes([_DATA_CHANNEL]) + chunk)
            except (websocket.WebSocketException, OSError):
                pass
            finally:
                ws.close()
                reader.join(timeout=1.0)

    def forward_ports(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server.bind(("127.0.0.1", self.local_port))
            server.listen()
            server.settimeout(0.2)
            while not self.stop_event.is_set():
                try:
                    conn, _addr = server.accept()
                except socket.timeout:
                    continue
                conn.settimeout(None)
                threading.Thread(target=self._handle, args=(conn,), daemon=True).start()


class WebSocketPortForwarderFactory(PortForwarderFactory):
    """Creates websocket-based forwarders against the API server."""

    def __init__(self, rest_config: RestConfig) -> None:
        self.rest_config = rest_config

    def create_port_forwarder(
        self,
        stop_event: threading.Event,
        namespace: str,
        pod_name: str,
        local_port: int,
        remote_port: int,
    ) -> WebSocketPortForwarder:
        parsed = urlparse(self.rest_config.host)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise KubeError(f"failed to parse host URL: {self.rest_config.host!r}")
        scheme = "wss" if parsed.scheme == "https" else "ws"
        path = f"/api/v1/namespaces/{namespace}/pods/{pod_name}/portforward"
        url = urlunparse((scheme, parsed.netloc, path, "", f"ports={remote_port}", ""))
        return WebSocketPortForwarder(url, self.rest_config, local_port, stop_event)


def is_pod_ready(pod: dict[str, Any]) -> bool:
    """Whether the pod is Running with a true Ready condition."""
    status = pod.get("status") or {}
    if status.get("phase") != "Running":
        return False
    for cond in status.get("conditions") or []:
        if cond.get("type") == "Ready":
            return cond.get("status") == "True"
    return False


def select_pod_for_service(client: Any, namespace: str, service_name: str) -> str:
    """Choose a pod behind the service, preferring a ready one."""
    try:
        svc = client.get_service(namespace, service_name)
    except KubeError as exc:
        raise KubeError(f"failed to get service {namespace}/{service_name}: {exc}") from exc
    selector = (svc.get("spec") or {}).get("selector") or {}
    if not selector:
        raise KubeError(f"service {namespace}/{service_name} has no selector")
    label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
    try:
        pods = client.list_pods(namespace, label_selector)
    except KubeError as exc:
        raise KubeError(
            f"failed to list pods for service {namespace}/{service_name}: {exc}"
        ) from exc
    if not pods:
        raise KubeError(
            f"no pods found for service {namespace}/{service_name} with selector {selector}"
        )
    ready = next((p for p in pods if is_pod_ready(p)), pods[0])
    return ready["metadata"]["name"]


def start_port_forward_loop_with_factory(
    stop_event: threading.Event,
    factory: PortForwarderFactory,
    client: Any,
    namespace: str,
    service_name: str,
    local_port: int,
    remote_port: int,
) -> None:
    """Forward to the service's pod, retrying every 0.3s until stop_event is set."""
    while not stop_event.is_set():
        try:
            pod_name = select_pod_for_service(client, namespace, service_name)
            forwarder = factory.create_port_forwarder(
                stop_event, namespace, pod_name, local_port, remote_port
            )
        except Exception:
            if stop_event.wait(RECONNECT_DELAY):
                return
            continue
        with contextlib.suppress(Exception):
            forwarder.forward_ports()
        if stop_event.wait(RECONNECT_DELAY):
            return


def start_port_forward_loop(
    stop_event: threading.Event,
    rest_config: RestConfig,
    client: Any,
    namespace: str,
    service_name: str,
    local_port: int,
    remote_port: int,
) -> None:
    """Forward with the websocket factory, reconnecting until stop_event is set."""
    start_port_forward_loop_with_factory(
        stop_event,
        WebSocketPortForwarderFactory(rest_config),
        client,
        namespace,
        service_name,
        local_port,
        remote_port,
    )