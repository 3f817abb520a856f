import pytest

from localmesh.config import (
    Config,
    ConfigError,
    KubernetesService,
    SSHBastion,
    TCPService,
    load,
    load_mock_config,
    parse_service,
)


@pytest.fixture
def write_config(tmp_path):
    def _write(content, name="config.yaml"):
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write


def test_default_listener_port(write_config):
    cfg = load(write_config("""
services:
  - kind: kubernetes
    host: test.localhost
    namespace: test
    service: test-svc
    port: 8080
    protocol: http
"""))
    assert cfg.listener_port == 80


def test_explicit_listener_port(write_config):
    cfg = load(write_config("""
listener_port: 8080
services:
  - kind: kubernetes
    host: test.localhost
    namespace: test
    service: test-svc
    port: 8080
    protocol: http
"""))
    assert cfg.listener_port == 8080


TCP_CONFIG = """
listener_port: 80
ssh_bastions:
  primary:
    instance: bastion-1
    zone: asia-northeast1-a
    project: test-project
services:
  - kind: tcp
    host: db.localhost
    ssh_bastion: primary
    target_host: 10.0.0.1
    target_port: 5432
"""


def test_ssh_bastion_with_tcp_service(write_config):
    cfg = load(write_config(TCP_CONFIG))
    assert len(cfg.ssh_bastions) == 1
    bastion = cfg.ssh_bastions["primary"]
    assert bastion == SSHBastion("bastion-1", "asia-northeast1-a", "test-project")
    assert len(cfg.services) == 1
    svc = cfg.services[0]
    assert isinstance(svc, TCPService)
    assert svc.host == "db.localhost"
    assert svc.ssh_bastion == "primary"
    assert svc.target_host == "10.0.0.1"
    assert svc.target_port == 5432


def test_ssh_bastion_reference_not_found(write_config):
    content = TCP_CONFIG.replace("ssh_bastion: primary", "ssh_bastion: nonexistent")
    with pytest.raises(ConfigError) as exc:
        load(write_config(content))
    assert "ssh_bastion 'nonexistent' not found" in str(exc.value)


def test_tcp_service_without_target_host(write_config):
    content = TCP_CONFIG.replace("    target_host: 10.0.0.1\n", "")
    with pytest.raises(ConfigError, match="target_host is required"):
        load(write_config(content))


def test_tcp_service_without_target_port(write_config):
    content = TCP_CONFIG.replace("    target_port: 5432\n", "")
    with pytest.raises(ConfigError, match="target_port is required"):
        load(write_config(content))


def test_k8s_service_without_namespace(write_config):
    with pytest.raises(ConfigError, match="namespace is required"):
        load(write_config("""
listener_port: 80
services:
  - kind: kubernetes
    host: api.localhost
    service: api-svc
    protocol: http
"""))


MIXED_CONFIG = """
listener_port: 80
ssh_bastions:
  primary:
    instance: bastion-1
    zone: asia-northeast1-a
services:
  - kind: kubernetes
    host: api.localhost
    namespace: default
    service: api-svc
    protocol: grpc
  - kind: tcp
    host: db.localhost
    ssh_bastion: primary
    target_host: 10.0.0.1
    target_port: 5432
"""


def test_mixed_services(write_config):
    cfg = load(write_config(MIXED_CONFIG))
    assert len(cfg.services) == 2
    k8s, tcp = cfg.services
    assert isinstance(k8s, KubernetesService)
    assert k8s.protocol == "grpc"
    assert k8s.namespace == "default"
    assert k8s.service == "api-svc"
    assert isinstance(tcp, TCPService)
    assert tcp.ssh_bastion == "primary"
    assert tcp.target_host == "10.0.0.1"
    assert cfg.ssh_bastions["primary"].project == ""


def test_missing_kind_field(write_config):
    with pytest.raises(ConfigError) as exc:
        load(write_config("""
listener_port: 80
services:
  - host: test.localhost
    namespace: test
    service: test-svc
    protocol: http
"""))
    assert "kind" in str(exc.value)


def test_invalid_kind_value(write_config):
    with pytest.raises(ConfigError) as exc:
        load(write_config("""
listener_port: 80
services:
  - kind: invalid_kind
    host: test.localhost
"""))
    assert "unknown service kind" in str(exc.value)
    assert "invalid_kind" in str(exc.value)


def test_kubernetes_service_valid(write_config):
    cfg = load(write_config("""
listener_port: 80
services:
  - kind: kubernetes
    host: test.localhost
    namespace: test
    service: test-svc
    protocol: http
"""))
    assert cfg.services == [
        KubernetesService(
            host="test.localhost", namespace="test", service="test-svc", protocol="http"
        )
    ]


def test_kubernetes_service_invalid_protocol(write_config):
    with pytest.raises(ConfigError, match="protocol"):
        load(write_config("""
listener_port: 80
services:
  - kind: kubernetes
    host: test.localhost
    namespace: test
    service: test-svc
    protocol: invalid
"""))


def test_error_reports_index(write_config):
    content = MIXED_CONFIG.replace("    target_port: 5432\n", "")
    with pytest.raises(ConfigError, match="invalid service entry at index 1"):
        load(write_config(content))


def test_fields_are_trimmed(write_config):
    cfg = load(write_config("""
services:
  - kind: kubernetes
    host: "  test.localhost  "
    namespace: " test "
    service: " test-svc"
    protocol: " http "
"""))
    svc = cfg.services[0]
    assert (svc.host, svc.namespace, svc.service, svc.protocol) == (
        "test.localhost",
        "test",
        "test-svc",
        "http",
    )


def test_type_discrimination(write_config):
    cfg = load(write_config(MIXED_CONFIG))
    assert cfg.services == [
        KubernetesService(
            host="api.localhost", namespace="default", service="api-svc", protocol="grpc"
        ),
        TCPService(
            host="db.localhost", ssh_bastion="primary", target_host="10.0.0.1", target_port=5432
        ),
    ]
    assert [svc.kind for svc in cfg.services] == ["kubernetes", "tcp"]


def test_host_and_kind(write_config):
    content = MIXED_CONFIG.replace("api.localhost", "k8s.localhost")
    cfg = load(write_config(content))
    k8s, tcp = cfg.services
    assert k8s.host == "k8s.localhost"
    assert k8s.kind == "kubernetes"
    assert tcp.host == "db.localhost"
    assert tcp.kind == "tcp"


def test_to_dict_kubernetes():
    svc = KubernetesService(
        host="test.localhost", namespace="test", service="test-svc", protocol="http"
    )
    assert svc.to_dict() == {
        "kind": "kubernetes",
        "host": "test.localhost",
        "namespace": "test",
        "service": "test-svc",
        "protocol": "http",
    }


def test_to_dict_tcp_round_trip():
    svc = TCPService(
        host="db.localhost", ssh_bastion="primary", target_host="10.0.0.1", target_port=5432
    )
    data = svc.to_dict()
    assert data["kind"] == "tcp"
    assert parse_service(data) == svc


def test_to_dict_kubernetes_round_trip_with_port():
    svc = KubernetesService(
        host="a.localhost", namespace="ns", service="s", port_name="grpc", port=9090, protocol="grpc"
    )
    assert parse_service(svc.to_dict()) == svc


def test_parse_service_kind_not_string():
    with pytest.raises(ConfigError, match="'kind' must be a string"):
        parse_service({"kind": 5})


def test_load_mock_config_valid(write_config):
    path = write_config("""
mocks:
  - namespace: test
    service: test-svc
    port_name: http
    resolved_port: 8080
  - namespace: another
    service: another-svc
    port_name: grpc
    resolved_port: 50051
""", name="mocks.yaml")
    mock_cfg = load_mock_config(path)
    assert len(mock_cfg.mocks) == 2
    first = mock_cfg.mocks[0]
    assert first.namespace == "test"
    assert first.service == "test-svc"
    assert first.resolved_port == 8080
    assert mock_cfg.mocks[1].port_name == "grpc"


def test_load_mock_config_empty_path():
    assert load_mock_config("") is None


def test_load_mock_config_missing_file():
    with pytest.raises(OSError):
        load_mock_config("/nonexistent/path/to/mocks.yaml")


def test_load_mock_config_invalid_yaml(write_config):
    path = write_config("""
mocks:
  - namespace: test
    invalid yaml here
""", name="mocks.yaml")
    with pytest.raises(ConfigError):
        load_mock_config(path)


@pytest.mark.parametrize(
    "svc, message",
    [
        (KubernetesService(namespace="test", service="svc", protocol="http"), "host is required"),
        (KubernetesService(host="test.localhost", namespace="test", protocol="http"), "service is required"),
        (
            KubernetesService(host="test.localhost", namespace="test", service="svc", protocol="invalid"),
            "protocol must be",
        ),
    ],
)
def test_kubernetes_validate_edge_cases(svc, message):
    with pytest.raises(ConfigError, match=message):
        svc.validate(Config())


def test_tcp_validate_missing_bastion():
    cfg = Config(ssh_bastions={"primary": SSHBastion("test", "zone", "proj")})
    svc = TCPService(host="db.localhost", target_host="10.0.0.1", target_port=5432)
    with pytest.raises(ConfigError, match="ssh_bastion is required"):
        svc.validate(cfg)


def test_load_missing_file():
    with pytest.raises(OSError):
        load("/nonexistent/path/to/config.yaml")


def test_load_no_services(write_config):
    with pytest.raises(ConfigError, match="no services configured"):
        load(write_config("listener_port: 80\n"))