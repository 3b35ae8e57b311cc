"""Runtime configuration of the virtual IP manager."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List

log = logging.getLogger(__name__)

AUTO = "auto"

# Where the kernel exposes per-interface state.
SYS_CLASS_NET = "/sys/class/net"


class InterfaceError(ValueError):
    """A configured network interface cannot be used."""


@dataclass
class KubernetesLeaderElection:
    """Settings for leader election through Kubernetes leases."""

    enable_leader_election: bool = False
    lease_name: str = ""
    lease_duration: int = 0
    renew_deadline: int = 0
    retry_period: int = 0
    lease_annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class Etcd:
    """Settings for the etcd client."""

    ca_file: str = ""
    client_cert_file: str = ""
    client_key_file: str = ""
    endpoints: List[str] = field(default_factory=list)


@dataclass
class Port:
    """A frontend port of a load balancer."""

    type: str = ""
    port: int = 0


@dataclass
class LoadBalancer:
    """One load-balancing instance."""

    name: str = ""
    ports: List[Port] = field(default_factory=list)
    bind_to_vip: bool = False
    forwarding_method: str = ""


@dataclass
class Config(KubernetesLeaderElection):
    """All settings of a running instance."""

    logging: int = 0
    enable_arp: bool = False
    enable_bgp: bool = False
    enable_wireguard: bool = False
    enable_routing_table: bool = False
    enable_control_plane: bool = False
    detect_control_plane: bool = False
    kubernetes_addr: str = ""
    enable_services: bool = False
    enable_services_election: bool = False
    enable_node_labeling: bool = False
    load_balancer_class_only: bool = False
    load_balancer_class_name: str = ""
    load_balancer_class_legacy_handling: bool = False
    enable_service_security: bool = False
    arp_broadcast_rate: int = 0
    annotations: str = ""
    leader_election_type: str = ""
    etcd: Etcd = field(default_factory=Etcd)
    add_peers_as_backends: bool = False
    vip: str = ""
    vip_subnet: str = ""
    address: str = ""
    port: int = 0
    namespace: str = ""
    service_namespace: str = ""
    ddns: bool = False
    node_name: str = ""
    single_node: bool = False
    start_as_leader: bool = False
    interface: str = ""
    services_interface: str = ""
    enable_load_balancer: bool = False
    load_balancer_port: int = 0
    load_balancer_forwarding_method: str = ""
    routing_table_id: int = 0
    routing_table_type: int = 0
    routing_protocol: int = 0
    clean_routing_table: bool = False
    bgp_peers: List[str] = field(default_factory=list)
    load_balancers: List[LoadBalancer] = field(default_factory=list)
    prometheus_http_server: str = ""
    egress_pod_cidr: str = ""
    egress_service_cidr: str = ""
    egress_with_nftables: bool = False
    services_lease_name: str = ""
    k8s_config_file: str = ""
    dns_mode: str = ""
    disable_service_updates: bool = False
    enable_endpoint_slices: bool = False
    mirror_dest_interface: str = ""
    iptables_backend: str = ""
    backend_health_check_interval: int = 0
    lo_interface_global_scope: bool = False
    health_check_port: int = 0

    def check_interface(self) -> None:
        """Raise :class:`InterfaceError` if a configured interface is unusable."""
        for iface in (self.interface, self.services_interface):
            if not iface:
                continue
            try:
                is_valid_interface(iface)
            except InterfaceError as exc:
                raise InterfaceError(
                    f"{iface} is not valid interface, reason: {exc}"
                ) from exc


def is_valid_interface(iface: str) -> None:
    """Raise :class:`InterfaceError` unless the interface exists and is up.

    Interfaces whose state is unknown (loopback, point-to-point links) are
    accepted with a warning.
    """
    if iface == AUTO:
        return
    state_path = os.path.join(SYS_CLASS_NET, iface, "operstate")
    try:
        with open(state_path, encoding="ascii") as handle:
            state = handle.read().strip()
    except OSError as exc:
        raise InterfaceError(f"get {iface} failed, error: {exc}") from exc

    if state == "unknown":
        log.warning(
            "the status of the interface is unknown. Ensure your interface is "
            "ready to accept traffic, if so you can safely ignore this message "
            "interface=%s",
            iface,
        )
    elif state != "up":
        raise InterfaceError(f"{iface} is not up")