"""Virtual IP and load-balancer building blocks: iptables, IPVS backends and endpoint handling."""

__version__ = "0.9.2"

__all__ = [
    "annotations",
    "config",
    "endpoint_workers",
    "endpoints",
    "iptables",
    "ipvs",
    "version",
]