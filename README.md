# kubevip

Building blocks for managing virtual IP addresses and load balancing on
Linux cluster nodes. The package has no third-party dependencies.

- `kubevip.iptables` runs the `iptables-legacy` / `iptables-nft` tools and
  their `ip6tables-*` counterparts. It can check, insert, append and delete
  rules, create, flush, rename and delete chains, and read packet and byte
  counters as structured `Stat` records. Failed commands raise
  `IPTablesError`. On iptables releases without `--wait`, commands take the
  xtables lock file through `XtablesLock`.
- `kubevip.version` reads the version of `iptables` on the `PATH`. It also
  works out which backend, `nft` or `legacy`, the node's rules are held in.
- `kubevip.config` defines the `Config` settings dataclass and its parts
  (`KubernetesLeaderElection`, `Etcd`, `LoadBalancer`, `Port`).
  `Config.check_interface()` and `is_valid_interface()` read the interface
  state from `/sys/class/net`. They raise `InterfaceError` when an
  interface is missing or not up.
- `kubevip.ipvs` has `IPVSLoadBalancer`, which keeps the backends of an
  IPVS virtual service in step with their health. It checks each backend
  by opening a TCP connection to it. It supports the masquerade, local,
  tunnel, direct-route and bypass forwarding methods.
- `kubevip.endpoint_workers` and `kubevip.endpoints` react to changes in a
  service's endpoints. They track the last known good endpoint. They
  advertise service addresses as BGP hosts or as routing-table entries,
  and they start or stop a per-service leader election.
- `kubevip.annotations` holds the service annotation keys, such as
  `EGRESS` and `ACTIVE_ENDPOINT`.

## Installation

```
pip install kubevip
```

To run the tests, install the test extra:

```
pip install "kubevip[test]"
```

Most operations change the host's firewall or kernel state, so they need
root or the `NET_ADMIN` capability.

## Examples

Manage iptables rules:

```python
from kubevip.iptables import IPTables, IPTablesError, Protocol

ipt = IPTables(proto=Protocol.IPV4, nftables=True)
ipt.append_unique("nat", "POSTROUTING", "-s", "10.0.0.5/32", "-j", "MASQUERADE")
for stat in ipt.structured_stats("nat", "POSTROUTING"):
    print(stat.target, stat.packets, stat.bytes)

try:
    ipt.delete("nat", "POSTROUTING", "-s", "10.0.0.6/32", "-j", "MASQUERADE")
except IPTablesError as err:
    if not err.is_not_exist():
        raise
```

Parse version strings without running any command:

```python
from kubevip.iptables import extract_iptables_version
from kubevip.version import parse_version

extract_iptables_version("iptables v1.8.7 (nf_tables)")  # (1, 8, 7, "nf_tables")
parse_version("iptables v1.6.2").compare(parse_version("iptables v1.8.0"))  # negative
```

Work out the backend mode from saved rule dumps. A backend that holds
Kubernetes chains wins. Otherwise the one with more lines wins, and a tie
goes to `nft`:

```python
from kubevip.version import detect_backend_mode

detect_backend_mode(nft4, nft6, legacy4, legacy6)  # "nft" or "legacy"
```

Split an address into its IPVS address family:

```python
from kubevip.ipvs import AddressFamily, ip_and_family

addr, family = ip_and_family("ff02::3")
assert family is AddressFamily.INET6
```

Track backends behind a virtual service. `client` is any object that has
the methods of the `IPVSClient` protocol:

```python
from kubevip.ipvs import IPVSLoadBalancer

lb = IPVSLoadBalancer(client, "192.168.0.10", 6443, forwarding_method="masquerade",
                      start_health_check=False)
lb.add_backend("192.168.0.21", 6443)
lb.check_backends()
lb.remove()
```

With `start_health_check` left at its default, a background thread runs
`check_backends()` every `backend_health_check_interval` seconds.

## Collaborators you supply

`kubevip.endpoint_workers` and `kubevip.endpoints` are duck-typed. You pass
in the objects they work on:

- a manager with `config`, `bgp_server`, `find_service_instance()`,
  `teardown_egress()`, `count_route_references()` and
  `start_services_leader_election()`;
- an endpoint provider with `get_label()`, `load_object()`,
  `get_local_endpoints()`, `get_all_endpoints()` and `get_protocol()`;
- service objects and service instances that carry their networks.

The module docstrings list the exact attributes and methods.
`new_endpoint_worker()` chooses the worker from the config.
`RoutingTableWorker` is used when `enable_routing_table` is set,
`BGPWorker` when `enable_bgp` is set, and `GenericWorker` otherwise.

## What this package does not do

- It does not talk to the kernel's IPVS table itself. `IPVSLoadBalancer`
  needs a client object for that.
- It has no BGP speaker, no route programming and no egress rules of its
  own. These come through the manager and network objects you pass in.
- It does not connect to the Kubernetes API, and it does not implement
  leader election. It reads no configuration from the environment or from
  files, generates no manifests, and has no command-line program.

## Testing

```
pytest
```