import threading
import time

import pytest

from localmesh.config import SSHBastion
from localmesh.gcp import build_gcloud_ssh_command, start_gcp_ssh_tunnel


@pytest.fixture
def bastion():
    return SSHBastion(instance="test-instance", zone="asia-northeast1-a", project="test-project")


def test_start_returns_when_already_stopped(bastion):
    stop = threading.Event()
    stop.set()
    start = time.monotonic()
    result = start_gcp_ssh_tunnel(stop, bastion, 10000, "10.0.0.1", 5432, "info")
    assert result is None
    assert time.monotonic() - start < 1.0


def test_start_empty_instance_rejected():
    stop = threading.Event()
    b = SSHBastion(instance="", zone="asia-northeast1-a", project="test-project")
    with pytest.raises(ValueError, match="instance name is empty"):
        start_gcp_ssh_tunnel(stop, b, 10000, "10.0.0.1", 5432, "info")


def test_start_empty_zone_rejected():
    stop = threading.Event()
    b = SSHBastion(instance="x", zone="", project="test-project")
    with pytest.raises(ValueError, match="zone is empty"):
        start_gcp_ssh_tunnel(stop, b, 10000, "10.0.0.1", 5432, "info")


def test_start_none_bastion_rejected():
    with pytest.raises(ValueError, match="bastion is nil"):
        start_gcp_ssh_tunnel(threading.Event(), None, 10000, "10.0.0.1", 5432, "info")


def test_start_invalid_local_port(bastion):
    with pytest.raises(ValueError, match="invalid local port: 0"):
        start_gcp_ssh_tunnel(threading.Event(), bastion, 0, "10.0.0.1", 5432, "info")


def test_start_invalid_target_port(bastion):
    with pytest.raises(ValueError, match="invalid target port: 0"):
        start_gcp_ssh_tunnel(threading.Event(), bastion, 10000, "10.0.0.1", 0, "info")


def test_start_port_out_of_range(bastion):
    with pytest.raises(ValueError, match="invalid local port: 65536"):
        start_gcp_ssh_tunnel(threading.Event(), bastion, 65536, "10.0.0.1", 5432, "info")


def test_start_empty_target_host(bastion):
    with pytest.raises(ValueError, match="target host is empty"):
        start_gcp_ssh_tunnel(threading.Event(), bastion, 10000, "", 5432, "info")


def test_start_retries_when_gcloud_missing(bastion, monkeypatch):
    calls = []

    def fake_which(name):
        calls.append(name)
        return None

    monkeypatch.setattr("localmesh.gcp.shutil.which", fake_which)
    stop = threading.Event()
    timer = threading.Timer(0.8, stop.set)
    timer.start()
    start = time.monotonic()
    try:
        result = start_gcp_ssh_tunnel(stop, bastion, 10000, "10.0.0.1", 5432, "info")
    finally:
        timer.cancel()
    elapsed = time.monotonic() - start
    assert result is None
    assert elapsed >= 0.3
    assert len(calls) >= 2
    assert set(calls) == {"gcloud"}


def test_start_launches_gcloud_with_built_arguments(bastion, monkeypatch):
    launched = []
    stop = threading.Event()

    class FakeProcess:
        returncode = 0

        def __init__(self, args, stdout=None):
            launched.append((args, stdout))
            stop.set()

        def poll(self):
            return 0

        def wait(self):
            return 0

        def kill(self):
            pass

    monkeypatch.setattr("localmesh.gcp.shutil.which", lambda name: "/opt/bin/gcloud")
    monkeypatch.setattr("localmesh.gcp.subprocess.Popen", FakeProcess)
    start_gcp_ssh_tunnel(stop, bastion, 10000, "10.0.0.1", 5432, "debug")

    assert len(launched) == 1
    args, stdout = launched[0]
    assert args[0] == "/opt/bin/gcloud"
    assert args[1:] == build_gcloud_ssh_command(bastion, 10000, "10.0.0.1", 5432)
    assert stdout is None


@pytest.mark.parametrize(
    "b, local_port, target_host, target_port, expected",
    [
        (
            SSHBastion(instance="bastion-1", zone="us-central1-a", project="my-project"),
            10000,
            "10.0.0.1",
            5432,
            [
                "compute", "ssh", "bastion-1",
                "--project=my-project",
                "--zone=us-central1-a",
                "--",
                "-L", "10000:10.0.0.1:5432",
                "-N",
                "-o", "ExitOnForwardFailure=yes",
                "-o", "ServerAliveInterval=30",
                "-o", "ServerAliveCountMax=3",
            ],
        ),
        (
            SSHBastion(instance="bastion-2", zone="asia-northeast1-a", project="test-project"),
            20000,
            "192.168.1.1",
            3306,
            [
                "compute", "ssh", "bastion-2",
                "--project=test-project",
                "--zone=asia-northeast1-a",
                "--",
                "-L", "20000:192.168.1.1:3306",
                "-N",
                "-o", "ExitOnForwardFailure=yes",
                "-o", "ServerAliveInterval=30",
                "-o", "ServerAliveCountMax=3",
            ],
        ),
    ],
)
def test_build_gcloud_ssh_command(b, local_port, target_host, target_port, expected):
    assert build_gcloud_ssh_command(b, local_port, target_host, target_port) == expected