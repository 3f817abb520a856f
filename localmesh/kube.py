"""Minimal Kubernetes API access driven by the user's kubeconfig."""

from __future__ import annotations

import base64
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import requests
import yaml


class KubeError(Exception):
    """Raised for kubeconfig problems and failed API requests."""


@dataclass
class RestConfig:
    """Connection settings for one cluster, taken from a kubeconfig context."""

    host: str
    token: str = ""
    username: str = ""
    password: str = ""
    insecure_skip_tls_verify: bool = False
    certificate_authority: str = ""
    certificate_authority_data: str = ""
    client_certificate: str = ""
    client_certificate_data: str = ""
    client_key: str = ""
    client_key_data: str = ""
    _materialized: dict[str, str] = field(default_factory=dict, repr=False)

    def auth_headers(self) -> dict[str, str]:
        """HTTP headers carrying the configured credentials."""
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        if self.username:
            raw = f"{self.username}:{self.password}".encode()
            return {"Authorization": "Basic " + base64.b64encode(raw).decode()}
        return {}

    def _file_for(self, name: str, path: str, data: str) -> str:
        if path:
            return path
        if not data:
            return ""
        if name not in self._materialized:
            with tempfile.NamedTemporaryFile(
                "wb", prefix="localmesh-", suffix=f".{name}", delete=False
            ) as f:
                f.write(base64.b64decode(data))
            self._materialized[name] = f.name
        return self._materialized[name]

    def tls_paths(self) -> tuple[str, str, str]:
        """Paths of the CA bundle, client certificate and client key ('' if unset)."""
        return (
            self._file_for("ca", self.certificate_authority, self.certificate_authority_data),
            self._file_for("crt", self.client_certificate, self.client_certificate_data),
            self._file_for("key", self.client_key, self.client_key_data),
        )


def _kubeconfig_paths() -> list[Path]:
    env = os.environ.get("KUBECONFIG", "")
    if env:
        return [Path(p) for p in env.split(os.pathsep) if p]
    return [Path.home() / ".kube" / "config"]


def _resolve(base: Path, value: Any) -> str:
    if not value:
        return ""
    path = Path(str(value))
    return str(path if path.is_absolute() else base / path)


def _load_merged() -> dict[str, Any]:
    merged: dict[str, Any] = {"current-context": "", "clusters": {}, "contexts": {}, "users": {}}
    found = False
    for path in _kubeconfig_paths():
        if not path.is_file():
            continue
        found = True
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise KubeError(f"invalid kubeconfig {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise KubeError(f"invalid kubeconfig {path}: not a mapping")
        if not merged["current-context"] and data.get("current-context"):
            merged["current-context"] = str(data["current-context"])
        for section, inner in (("clusters", "cluster"), ("contexts", "context"), ("users", "user")):
            for entry in data.get(section) or []:
                if not isinstance(entry, dict) or "name" not in entry:
                    raise KubeError(f"invalid {section} entry in kubeconfig {path}")
                body = dict(entry.get(inner) or {})
                body["_base"] = path.parent
                merged[section].setdefault(str(entry["name"]), body)
    if not found:
        raise KubeError("invalid configuration: no configuration has been provided")
    return merged


def load_rest_config() -> RestConfig:
    """Build a RestConfig from $KUBECONFIG or ~/.kube/config using the current context."""
    merged = _load_merged()
    context_name = merged["current-context"]
    if not context_name:
        raise KubeError("invalid configuration: no current-context is set")
    context = merged["contexts"].get(context_name)
    if context is None:
        raise KubeError(f"context {context_name!r} not found in kubeconfig")
    cluster = merged["clusters"].get(str(context.get("cluster", "")))
    if cluster is None or not cluster.get("server"):
        raise KubeError(f"cluster for context {context_name!r} has no server")
    user = merged["users"].get(str(context.get("user", "")), {"_base": cluster["_base"]})
    return RestConfig(
        host=str(cluster["server"]),
        token=str(user.get("token") or ""),
        username=str(user.get("username") or ""),
        password=str(user.get("password") or ""),
        insecure_skip_tls_verify=bool(cluster.get("insecure-skip-tls-verify", False)),
        certificate_authority=_resolve(cluster["_base"], cluster.get("certificate-authority")),
        certificate_authority_data=str(cluster.get("certificate-authority-data") or ""),
        client_certificate=_resolve(user["_base"], user.get("client-certificate")),
        client_certificate_data=str(user.get("client-certificate-data") or ""),
        client_key=_resolve(user["_base"], user.get("client-key")),
        client_key_data=str(user.get("client-key-data") or ""),
    )


class KubeClient:
    """A tiny REST client for the core/v1 objects this tool needs."""

    def __init__(self, rest_config: RestConfig, timeout: float = 30.0) -> None:
        self.rest_config = rest_config
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update(rest_config.auth_headers())
        ca, cert, key = rest_config.tls_paths()
        if rest_config.insecure_skip_tls_verify:
            self._session.verify = False
        elif ca:
            self._session.verify = ca
        if cert and key:
            self._session.cert = (cert, key)

    def _get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        url = self.rest_config.host.rstrip("/") + path
        try:
            resp = self._session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise KubeError(str(exc)) from exc
        if resp.status_code == 404:
            raise KubeError(f"{path}: not found")
        if not resp.ok:
            raise KubeError(f"{path}: HTTP {resp.status_code}: {resp.text.strip()}")
        return resp.json()

    def get_service(self, namespace: str, name: str) -> dict[str, Any]:
        """Return the Service object as a dict."""
        return self._get(f"/api/v1/namespaces/{namespace}/services/{name}")

    def list_pods(self, namespace: str, label_selector: str) -> list[dict[str, Any]]:
        """Return the Pods matching a label selector."""
        body = self._get(
            f"/api/v1/namespaces/{namespace}/pods", params={"labelSelector": label_selector}
        )
        return list(body.get("items") or [])


def new_client() -> tuple[KubeClient, RestConfig]:
    """Create a client from the default kubeconfig rules."""
    rest_config = load_rest_config()
    return KubeClient(rest_config), rest_config


def resolve_service_port(
    client: Any, namespace: str, service_name: str, port_name: str, port: int
) -> int:
    """Pick the service port: explicit port, then named port, then the first one."""
    if port != 0:
        return port
    try:
        svc = client.get_service(namespace, service_name)
    except KubeError as exc:
        raise KubeError(f"failed to get service {namespace}/{service_name}: {exc}") from exc
    ports = (svc.get("spec") or {}).get("ports") or []
    if not ports:
        raise KubeError(f"service {namespace}/{service_name} has no ports defined")
    if port_name.strip():
        for entry in ports:
            if entry.get("name", "") == port_name:
                return int(entry["port"])
        raise KubeError(
            f"service {namespace}/{service_name} has no port named '{port_name}'"
        )
    return int(ports[0]["port"])