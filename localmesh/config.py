"""Loading and validating the service mesh configuration file."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Union

import yaml

DEFAULT_LISTENER_PORT = 80


class ConfigError(ValueError):
    """Raised when a configuration file is malformed or invalid."""


def _as_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ConfigError(f"field '{key}' must be a scalar value")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_int(raw: dict[str, Any], key: str) -> int:
    value = raw.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"field '{key}' must be an integer, got {value!r}")
    return value


def _as_mapping(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{what} must be a mapping")
    return value


def _read_yaml(path: str | Path) -> Any:
    text = Path(path).read_text(encoding="utf-8")
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc


@dataclass
class SSHBastion:
    """A GCP Compute instance used as an SSH jump host."""

    instance: str = ""
    zone: str = ""
    project: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> SSHBastion:
        data = _as_mapping(raw, "ssh_bastion entry")
        return cls(
            instance=_as_str(data, "instance"),
            zone=_as_str(data, "zone"),
            project=_as_str(data, "project"),
        )


@dataclass
class KubernetesService:
    """A Kubernetes Service reached over HTTP or gRPC."""

    kind: ClassVar[str] = "kubernetes"

    host: str = ""
    namespace: str = ""
    service: str = ""
    port_name: str = ""
    port: int = 0
    protocol: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> KubernetesService:
        return cls(
            host=_as_str(raw, "host"),
            namespace=_as_str(raw, "namespace"),
            service=_as_str(raw, "service"),
            port_name=_as_str(raw, "port_name"),
            port=_as_int(raw, "port"),
            protocol=_as_str(raw, "protocol"),
        )

    def validate(self, cfg: Config) -> None:
        """Raise ConfigError if a required field is missing or invalid."""
        if not self.host:
            raise ConfigError("host is required for kubernetes service")
        if not self.namespace:
            raise ConfigError(
                f"namespace is required for kubernetes service '{self.host}'"
            )
        if not self.service:
            raise ConfigError(
                f"service is required for kubernetes service '{self.host}'"
            )
        if self.protocol not in ("http", "grpc"):
            raise ConfigError(
                "protocol must be 'http' or 'grpc' for kubernetes service "
                f"'{self.host}', got '{self.protocol}'"
            )

    def to_dict(self) -> dict[str, Any]:
        """Serialisable form including the 'kind' tag."""
        out: dict[str, Any] = {
            "kind": self.kind,
            "host": self.host,
            "namespace": self.namespace,
            "service": self.service,
        }
        if self.port_name:
            out["port_name"] = self.port_name
        if self.port:
            out["port"] = self.port
        out["protocol"] = self.protocol
        return out

    def _trimmed(self) -> KubernetesService:
        return dataclasses.replace(
            self,
            host=self.host.strip(),
            namespace=self.namespace.strip(),
            service=self.service.strip(),
            port_name=self.port_name.strip(),
            protocol=self.protocol.strip(),
        )


@dataclass
class TCPService:
    """A TCP endpoint reached through a GCP SSH bastion."""

    kind: ClassVar[str] = "tcp"

    host: str = ""
    ssh_bastion: str = ""
    target_host: str = ""
    target_port: int = 0

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TCPService:
        return cls(
            host=_as_str(raw, "host"),
            ssh_bastion=_as_str(raw, "ssh_bastion"),
            target_host=_as_str(raw, "target_host"),
            target_port=_as_int(raw, "target_port"),
        )

    def validate(self, cfg: Config) -> None:
        """Raise ConfigError if a required field is missing or unresolved."""
        if not self.host:
            raise ConfigError("host is required for tcp service")
        if not self.ssh_bastion:
            raise ConfigError(f"ssh_bastion is required for tcp service '{self.host}'")
        if self.ssh_bastion not in cfg.ssh_bastions:
            raise ConfigError(
                f"ssh_bastion '{self.ssh_bastion}' not found for service '{self.host}'"
            )
        if not self.target_host:
            raise ConfigError(f"target_host is required for tcp service '{self.host}'")
        if self.target_port == 0:
            raise ConfigError(f"target_port is required for tcp service '{self.host}'")

    def to_dict(self) -> dict[str, Any]:
        """Serialisable form including the 'kind' tag."""
        return {
            "kind": self.kind,
            "host": self.host,
            "ssh_bastion": self.ssh_bastion,
            "target_host": self.target_host,
            "target_port": self.target_port,
        }

    def _trimmed(self) -> TCPService:
        return dataclasses.replace(
            self,
            host=self.host.strip(),
            ssh_bastion=self.ssh_bastion.strip(),
            target_host=self.target_host.strip(),
        )


Service = Union[KubernetesService, TCPService]

_SERVICE_KINDS: dict[str, type] = {
    KubernetesService.kind: KubernetesService,
    TCPService.kind: TCPService,
}


@dataclass
class Config:
    """The whole mesh configuration."""

    listener_port: int = DEFAULT_LISTENER_PORT
    ssh_bastions: dict[str, SSHBastion] = field(default_factory=dict)
    services: list[Service] = field(default_factory=list)


def parse_service(raw: Any) -> Service:
    """Build a service from a mapping, choosing the type by its 'kind' field."""
    if not isinstance(raw, dict):
        raise ConfigError("service entry must be a mapping")
    if "kind" not in raw:
        raise ConfigError("service must have 'kind' field")
    kind = raw["kind"]
    if not isinstance(kind, str):
        raise ConfigError("'kind' must be a string")
    try:
        service_type = _SERVICE_KINDS[kind]
    except KeyError:
        raise ConfigError(
            f"unknown service kind: {kind} (must be 'kubernetes' or 'tcp')"
        ) from None
    return service_type.from_dict(raw)


def load(path: str | Path) -> Config:
    """Read, default, trim and validate a configuration file."""
    data = _as_mapping(_read_yaml(path), "configuration")

    listener_port = _as_int(data, "listener_port") or DEFAULT_LISTENER_PORT
    bastions = {
        str(name): SSHBastion.from_dict(entry)
        for name, entry in _as_mapping(data.get("ssh_bastions"), "ssh_bastions").items()
    }

    raw_services = data.get("services") or []
    if not isinstance(raw_services, list):
        raise ConfigError("services must be a list")
    services: list[Service] = [
        None if entry is None else parse_service(entry) for entry in raw_services
    ]
    if not services:
        raise ConfigError(f"no services configured in {path}")

    cfg = Config(listener_port=listener_port, ssh_bastions=bastions)
    for index, service in enumerate(services):
        if service is None:
            raise ConfigError(
                f"invalid service entry at index {index}: service is nil"
            )
        service = service._trimmed()
        try:
            service.validate(cfg)
        except ConfigError as exc:
            raise ConfigError(f"invalid service entry at index {index}: {exc}") from exc
        cfg.services.append(service)
    return cfg


@dataclass
class MockService:
    """A pre-resolved service port used instead of querying a cluster."""

    namespace: str = ""
    service: str = ""
    port_name: str = ""
    resolved_port: int = 0

    @classmethod
    def from_dict(cls, raw: Any) -> MockService:
        data = _as_mapping(raw, "mock entry")
        return cls(
            namespace=_as_str(data, "namespace"),
            service=_as_str(data, "service"),
            port_name=_as_str(data, "port_name"),
            resolved_port=_as_int(data, "resolved_port"),
        )


@dataclass
class MockConfig:
    """A set of mocked service port resolutions for offline use."""

    mocks: list[MockService] = field(default_factory=list)


def load_mock_config(path: str | Path | None) -> MockConfig | None:
    """Load a mock configuration; an empty path yields None."""
    if not path:
        return None
    data = _as_mapping(_read_yaml(path), "mock configuration")
    raw_mocks = data.get("mocks") or []
    if not isinstance(raw_mocks, list):
        raise ConfigError("mocks must be a list")
    return MockConfig(mocks=[MockService.from_dict(entry) for entry in raw_mocks])