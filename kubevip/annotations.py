"""Service annotation keys understood by the services manager."""

# The host that currently holds the VIP.
VIP_HOST = "kube-vip.io/vipHost"

# Enable egress on a service.
EGRESS = "kube-vip.io/egress"

# Egress should use IPv6.
EGRESS_IPV6 = "kube-vip.io/egress-ipv6"

# Ports that traffic is allowed to reach from the egress VIP.
EGRESS_DESTINATION_PORTS = "kube-vip.io/egress-destination-ports"

# Incoming ports allowed to the VIP.
EGRESS_SOURCE_PORTS = "kube-vip.io/egress-source-ports"

# Networks egress is enabled for.
EGRESS_ALLOWED_NETWORKS = "kube-vip.io/egress-allowed-networks"

# Networks egress is never applied to.
EGRESS_DENIED_NETWORKS = "kube-vip.io/egress-denied-networks"

# The endpoint (pod) currently active for the egress VIP.
ACTIVE_ENDPOINT = "kube-vip.io/active-endpoint"

# The endpoint (pod) currently active for the egress VIP, IPv6 variant.
ACTIVE_ENDPOINT_IPV6 = "kube-vip.io/active-endpoint-ipv6"

# Flush conntrack entries once egress is configured.
FLUSH_CONNTRACK = "kube-vip.io/flush-conntrack"

# Forward the service through UPnP.
UPNP_ENABLED = "kube-vip.io/forwardUPNP"