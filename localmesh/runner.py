"""Starting the local mesh and rendering its Envoy configuration."""

from __future__ import annotations

import contextlib
import subprocess
import sys
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, TextIO

import yaml

from . import gcp, hosts, kube, portforward
from .config import (
    Config,
    ConfigError,
    KubernetesService,
    MockConfig,
    TCPService,
    load_mock_config,
)
from .envoy import Route, build_config
from .netutil import free_local_port

DUMMY_PORT_BASE = 10000
_ENVOY_POLL_INTERVAL = 0.2


def _is_name_char(ch: str) -> bool:
    return ch == "_" or (ch.isascii() and ch.isalnum())


def sanitize(s: str) -> str:
    """Replace every character other than ASCII letters, digits and '_' with '_'."""
    return "".join(ch if _is_name_char(ch) else "_" for ch in s)


def find_mock_port(
    mock_cfg: MockConfig, namespace: str, service: str, port_name: str
) -> int:
    """Return the mocked port for a service; raise ConfigError if none matches."""
    for mock in mock_cfg.mocks:
        if (mock.namespace, mock.service, mock.port_name) == (namespace, service, port_name):
            return mock.resolved_port
    raise ConfigError(
        f"mock config not found for {namespace}/{service} (port_name={port_name})"
    )


def render_envoy_yaml(envoy_cfg: dict[str, Any]) -> str:
    """Serialise an Envoy configuration as YAML."""
    return yaml.safe_dump(envoy_cfg, default_flow_style=False, sort_keys=True)


def _kube_cluster_name(svc: KubernetesService, remote_port: int) -> str:
    return sanitize(f"{svc.namespace}_{svc.service}_{remote_port}")


def _tcp_cluster_name(svc: TCPService) -> str:
    return sanitize(f"tcp_{svc.ssh_bastion}_{svc.target_host}_{svc.target_port}")


def _new_client() -> tuple[kube.KubeClient, kube.RestConfig]:
    try:
        return kube.new_client()
    except KubeError_ as exc:
        raise kube.KubeError(f"failed to create kubernetes client: {exc}") from exc


KubeError_ = kube.KubeError


def dump_envoy_config(
    cfg: Config, mock_config_path: str | None = "", out: TextIO | None = None
) -> None:
    """Write the Envoy configuration for ``cfg`` without starting anything.

    With a mock configuration no cluster is contacted; local ports are
    placeholders starting at 10000.
    """
    out = sys.stdout if out is None else out

    mock_cfg: MockConfig | None = None
    if mock_config_path:
        try:
            mock_cfg = load_mock_config(mock_config_path)
        except (OSError, ConfigError) as exc:
            raise ConfigError(f"failed to load mock config: {exc}") from exc

    client = None
    if mock_cfg is None:
        client, _ = _new_client()

    routes: list[Route] = []
    for index, svc in enumerate(cfg.services):
        local_port = DUMMY_PORT_BASE + index
        if isinstance(svc, KubernetesService):
            if mock_cfg is not None:
                remote_port = find_mock_port(
                    mock_cfg, svc.namespace, svc.service, svc.port_name
                )
            else:
                remote_port = kube.resolve_service_port(
                    client, svc.namespace, svc.service, svc.port_name, svc.port
                )
            routes.append(
                Route(
                    host=svc.host,
                    local_port=local_port,
                    cluster_name=_kube_cluster_name(svc, remote_port),
                    type=svc.protocol,
                )
            )
        elif isinstance(svc, TCPService):
            routes.append(
                Route(
                    host=svc.host,
                    local_port=local_port,
                    cluster_name=_tcp_cluster_name(svc),
                    type="tcp",
                    listen_port=svc.target_port,
                )
            )
        else:
            raise TypeError(f"unknown service type: {type(svc).__name__}")

    out.write(render_envoy_yaml(build_config(cfg.listener_port, routes)))


def _start_worker(
    stop_event: threading.Event,
    description: str,
    target: Callable[..., None],
    *args: Any,
) -> None:
    def work() -> None:
        try:
            target(stop_event, *args)
        except Exception as exc:  # reported, never fatal to the mesh
            if not stop_event.is_set():
                print(f"{description}: {exc}", file=sys.stderr)

    threading.Thread(target=work, name=description, daemon=True).start()


def _cleanup_hosts() -> None:
    try:
        hosts.remove_entries()
    except OSError as exc:
        print(f"warning: failed to clean up /etc/hosts: {exc}", file=sys.stderr)
    else:
        print("/etc/hosts cleaned up")


def _update_hosts(cfg: Config) -> None:
    if not hosts.has_permission():
        raise PermissionError("need sudo: try 'sudo kubectl-localmesh ...'")
    try:
        hosts.add_entries([svc.host for svc in cfg.services])
    except OSError as exc:
        raise OSError(f"failed to update /etc/hosts: {exc}") from exc
    print("/etc/hosts updated successfully")


def _run_envoy(config_path: Path, log_level: str, stop_event: threading.Event) -> None:
    sys.stdout.flush()
    proc = subprocess.Popen(["envoy", "-c", str(config_path), "-l", log_level])
    try:
        while proc.poll() is None:
            if stop_event.wait(_ENVOY_POLL_INTERVAL):
                proc.kill()
                break
    finally:
        proc.wait()
    if proc.returncode and not stop_event.is_set():
        raise subprocess.CalledProcessError(proc.returncode, proc.args)


def run(
    cfg: Config,
    log_level: str = "info",
    update_hosts: bool = True,
    stop_event: threading.Event | None = None,
) -> None:
    """Start forwarders for every service and run Envoy until it exits or stop is set."""
    if stop_event is None:
        stop_event = threading.Event()

    client, rest_config = _new_client()

    with contextlib.ExitStack() as stack:
        if update_hosts:
            _update_hosts(cfg)
            stack.callback(_cleanup_hosts)

        tmp_dir = Path(
            stack.enter_context(tempfile.TemporaryDirectory(prefix="kubectl-localmesh-"))
        )
        stack.callback(stop_event.set)

        routes: list[Route] = []
        for svc in cfg.services:
            if isinstance(svc, TCPService):
                bastion = cfg.ssh_bastions.get(svc.ssh_bastion)
                if bastion is None:
                    raise ConfigError(
                        f"ssh_bastion '{svc.ssh_bastion}' not found for service '{svc.host}'"
                    )
                local_port = free_local_port()
                print(
                    f"gcp-ssh: {svc.host:<30} -> {svc.ssh_bastion} "
                    f"(instance={bastion.instance}, zone={bastion.zone}) -> "
                    f"{svc.target_host}:{svc.target_port} via 127.0.0.1:{local_port}"
                )
                _start_worker(
                    stop_event,
                    f"gcp-ssh tunnel error for {bastion.instance}",
                    gcp.start_gcp_ssh_tunnel,
                    bastion,
                    local_port,
                    svc.target_host,
                    svc.target_port,
                    log_level,
                )
                routes.append(
                    Route(
                        host=svc.host,
                        local_port=local_port,
                        cluster_name=_tcp_cluster_name(svc),
                        type="tcp",
                        listen_port=svc.target_port,
                    )
                )
            elif isinstance(svc, KubernetesService):
                remote_port = kube.resolve_service_port(
                    client, svc.namespace, svc.service, svc.port_name, svc.port
                )
                local_port = free_local_port()
                print(
                    f"pf: {svc.host:<30} -> {svc.namespace}/{svc.service}:{remote_port} "
                    f"via 127.0.0.1:{local_port}"
                )
                _start_worker(
                    stop_event,
                    f"port-forward error for {svc.namespace}/{svc.service}",
                    portforward.start_port_forward_loop,
                    rest_config,
                    client,
                    svc.namespace,
                    svc.service,
                    local_port,
                    remote_port,
                )
                routes.append(
                    Route(
                        host=svc.host,
                        local_port=local_port,
                        cluster_name=_kube_cluster_name(svc, remote_port),
                        type=svc.protocol or "http",
                    )
                )
            else:
                raise TypeError(f"unknown service type: {type(svc).__name__}")

        envoy_path = tmp_dir / "envoy.yaml"
        envoy_path.write_text(
            render_envoy_yaml(build_config(cfg.listener_port, routes)), encoding="utf-8"
        )

        print()
        print(f"envoy config: {envoy_path}")
        print(f"listen: 0.0.0.0:{cfg.listener_port}\n")

        _run_envoy(envoy_path, log_level, stop_event)