"""Local service mesh: port-forwards, SSH tunnels and an Envoy proxy routing by host."""

__version__ = "0.1.0"