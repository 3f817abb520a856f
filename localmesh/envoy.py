"""Building Envoy static bootstrap configuration for host-based routing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

_HTTP_PROTOCOL_OPTIONS = "envoy.extensions.upstreams.http.v3.HttpProtocolOptions"
_TYPE_PREFIX = "type.googleapis.com/"


@dataclass
class Route:
    """One upstream reached through a local port.

    ``type`` is "tcp" for raw TCP proxying; anything else is HTTP/gRPC.
    ``listen_port`` is only used for TCP routes.
    """

    host: str
    local_port: int
    cluster_name: str
    type: str = "http"
    listen_port: int = 0

    @property
    def is_tcp(self) -> bool:
        return self.type == "tcp"


def _socket_address(address: str, port: int) -> dict[str, Any]:
    return {"socket_address": {"address": address, "port_value": port}}


def _cluster(route: Route) -> dict[str, Any]:
    cluster: dict[str, Any] = {
        "name": route.cluster_name,
        "type": "STATIC",
        "connect_timeout": "1s",
        "load_assignment": {
            "cluster_name": route.cluster_name,
            "endpoints": [
                {
                    "lb_endpoints": [
                        {"endpoint": {"address": _socket_address("127.0.0.1", route.local_port)}}
                    ]
                }
            ],
        },
    }
    if not route.is_tcp:
        cluster["typed_extension_protocol_options"] = {
            _HTTP_PROTOCOL_OPTIONS: {
                "@type": _TYPE_PREFIX + _HTTP_PROTOCOL_OPTIONS,
                "explicit_http_config": {"http2_protocol_options": {}},
            }
        }
    return cluster


def _virtual_host(route: Route) -> dict[str, Any]:
    return {
        "name": route.cluster_name,
        "domains": [route.host],
        "routes": [
            {
                "match": {"prefix": "/"},
                "route": {"cluster": route.cluster_name, "timeout": "0s"},
            }
        ],
    }


def _http_listener(listener_port: int, routes: list[Route]) -> dict[str, Any]:
    return {
        "name": "listener_http",
        "address": _socket_address("0.0.0.0", listener_port),
        "filter_chains": [
            {
                "filters": [
                    {
                        "name": "envoy.filters.network.http_connection_manager",
                        "typed_config": {
                            "@type": _TYPE_PREFIX
                            + "envoy.extensions.filters.network.http_connection_manager.v3.HttpConnectionManager",
                            "stat_prefix": "ingress_http",
                            "codec_type": "AUTO",
                            "http2_protocol_options": {},
                            "route_config": {
                                "name": "local_route",
                                "virtual_hosts": [_virtual_host(r) for r in routes],
                            },
                            "http_filters": [
                                {
                                    "name": "envoy.filters.http.router",
                                    "typed_config": {
                                        "@type": _TYPE_PREFIX
                                        + "envoy.extensions.filters.http.router.v3.Router",
                                    },
                                }
                            ],
                        },
                    }
                ]
            }
        ],
    }


def _tcp_listener(route: Route) -> dict[str, Any]:
    return {
        "name": "listener_tcp_" + route.cluster_name,
        "address": _socket_address("0.0.0.0", route.listen_port),
        "filter_chains": [
            {
                "filters": [
                    {
                        "name": "envoy.filters.network.tcp_proxy",
                        "typed_config": {
                            "@type": _TYPE_PREFIX
                            + "envoy.extensions.filters.network.tcp_proxy.v3.TcpProxy",
                            "stat_prefix": "tcp_" + route.cluster_name,
                            "cluster": route.cluster_name,
                        },
                    }
                ]
            }
        ],
    }


def build_config(listener_port: int, routes: list[Route]) -> dict[str, Any]:
    """Return the Envoy static_resources configuration for the given routes.

    All HTTP/gRPC routes share one listener on ``listener_port``; each TCP
    route gets its own listener on its ``listen_port``.
    """
    http_routes = [r for r in routes if not r.is_tcp]
    tcp_routes = [r for r in routes if r.is_tcp]

    listeners: list[dict[str, Any]] = []
    if http_routes:
        listeners.append(_http_listener(listener_port, http_routes))
    listeners.extend(_tcp_listener(r) for r in tcp_routes)

    return {
        "static_resources": {
            "listeners": listeners,
            "clusters": [_cluster(r) for r in routes],
        }
    }