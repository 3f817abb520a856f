"""SSH tunnels through a GCP Compute instance using the gcloud CLI."""

from __future__ import annotations

import shutil
import subprocess
import threading

from .config import SSHBastion

RECONNECT_DELAY = 0.3
_POLL_INTERVAL = 0.1


def build_gcloud_ssh_command(
    bastion: SSHBastion, local_port: int, target_host: str, target_port: int
) -> list[str]:
    """Arguments to gcloud for a local port forward through the bastion."""
    return [
        "compute",
        "ssh",
        bastion.instance,
        f"--project={bastion.project}",
        f"--zone={bastion.zone}",
        "--",
        "-L",
        f"{local_port}:{target_host}:{target_port}",
        "-N",
        "-o",
        "ExitOnForwardFailure=yes",
        "-o",
        "ServerAliveInterval=30",
        "-o",
        "ServerAliveCountMax=3",
    ]


def _validate(
    bastion: SSHBastion | None, local_port: int, target_host: str, target_port: int
) -> None:
    if bastion is None:
        raise ValueError("bastion is nil")
    if not bastion.instance:
        raise ValueError("bastion instance name is empty")
    if not bastion.zone:
        raise ValueError("bastion zone is empty")
    if not 0 < local_port <= 65535:
        raise ValueError(f"invalid local port: {local_port}")
    if not target_host:
        raise ValueError("target host is empty")
    if not 0 < target_port <= 65535:
        raise ValueError(f"invalid target port: {target_port}")


def _run_single_tunnel(
    stop_event: threading.Event,
    bastion: SSHBastion,
    local_port: int,
    target_host: str,
    target_port: int,
    log_level: str,
) -> int | None:
    """Run gcloud once until it exits or stop is requested; return its exit code."""
    gcloud = shutil.which("gcloud")
    if gcloud is None:
        return None
    args = [gcloud, *build_gcloud_ssh_command(bastion, local_port, target_host, target_port)]
    stdout = None if log_level == "debug" else subprocess.DEVNULL
    try:
        proc = subprocess.Popen(args, stdout=stdout)
    except OSError:
        return None
    try:
        while proc.poll() is None:
            if stop_event.wait(_POLL_INTERVAL):
                proc.kill()
                break
    finally:
        proc.wait()
    return proc.returncode


def start_gcp_ssh_tunnel(
    stop_event: threading.Event,
    bastion: SSHBastion | None,
    local_port: int,
    target_host: str,
    target_port: int,
    log_level: str,
) -> None:
    """Keep an SSH tunnel open, reconnecting until ``stop_event`` is set.

    Raises ValueError for invalid parameters before any attempt is made.
    """
    _validate(bastion, local_port, target_host, target_port)
    while not stop_event.is_set():
        _run_single_tunnel(
            stop_event, bastion, local_port, target_host, target_port, log_level
        )
        if stop_event.wait(RECONNECT_DELAY):
            return