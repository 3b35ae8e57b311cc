"""Per-mode handling of a service's endpoints.

The workers rely on duck-typed collaborators:

* ``manager`` has ``config`` (a :class:`kubevip.config.Config`),
  ``bgp_server`` (with ``add_host(cidr)`` and ``del_host(cidr)``),
  ``find_service_instance(service)``,
  ``teardown_egress(endpoint, lb_ip, namespace, annotations)`` and
  ``count_route_references(route)``.
* ``provider`` has ``get_label()``, ``get_local_endpoints(node_id, config)``,
  ``get_all_endpoints()`` and ``get_protocol()``.
* ``service`` has ``name``, ``namespace``, ``annotations``,
  ``load_balancer_ip`` and ``external_traffic_policy``.
* an instance has ``clusters``; each cluster has a ``network`` list whose
  items have ``ip``, ``cidr``, ``interface`` and ``has_endpoints`` attributes
  and ``add_route(replace)``, ``update_routes()``, ``delete_route()`` and
  ``prepare_route()`` methods.
* ``svc_ctx`` has a ``configured_networks`` mapping keyed by IP.
"""

from __future__ import annotations

import errno
import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional

log = logging.getLogger(__name__)

SERVICE_EXTERNAL_TRAFFIC_POLICY_CLUSTER = "Cluster"


class EndpointWorkerError(RuntimeError):
    """An endpoint worker could not complete its task."""


@dataclass
class EndpointState:
    """Mutable per-service state shared between the watcher and workers."""

    last_known_good_endpoint: str = ""
    leader_election_active: bool = False
    cancel: Optional[Callable[[], None]] = None


def _elections_disabled(config: Any) -> bool:
    return not config.enable_services_election and not config.enable_leader_election


def _networks(instance: Any) -> Iterator[Any]:
    for cluster in instance.clusters:
        yield from cluster.network


def _is_ipv6(text: str) -> bool:
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv4Address):
        return False
    return ip.ipv4_mapped is None


def new_endpoint_worker(manager: Any, provider: Any) -> "GenericWorker":
    """Pick the worker matching the advertisement mode in the config."""
    if manager.config.enable_routing_table:
        return RoutingTableWorker(manager, provider)
    if manager.config.enable_bgp:
        return BGPWorker(manager, provider)
    return GenericWorker(manager, provider)


def clear_bgp_hosts(manager: Any, service: Any) -> None:
    """Withdraw every BGP host advertised for the service."""
    instance = manager.find_service_instance(service)
    if instance is None:
        return
    for network in _networks(instance):
        try:
            manager.bgp_server.del_host(network.cidr)
        except Exception as exc:  # noqa: BLE001 - logged and carried on
            log.error("[endpoint] error deleting BGP host err=%s", exc)
        else:
            log.debug(
                "[endpoint] deleted BGP host ip=%s service name=%s namespace=%s",
                network.cidr,
                service.name,
                service.namespace,
            )


def clear_routes(manager: Any, service: Any) -> List[Exception]:
    """Delete the service's routes not shared with other services.

    Returns the errors met; a route that is already gone is not an error.
    """
    errors: List[Exception] = []
    instance = manager.find_service_instance(service)
    if instance is None:
        return errors
    for network in _networks(instance):
        route = network.prepare_route()
        if manager.count_route_references(route) > 1:
            continue
        try:
            network.delete_route()
        except Exception as exc:  # noqa: BLE001 - collected for the caller
            if not (isinstance(exc, OSError) and exc.errno == errno.ESRCH):
                log.error("failed to delete route ip=%s err=%s", network.ip, exc)
                errors.append(exc)
        log.debug(
            "deleted route ip=%s service name=%s namespace=%s interface=%s tableID=%s",
            network.ip,
            service.name,
            service.namespace,
            network.interface,
            manager.config.routing_table_id,
        )
    return errors


class GenericWorker:
    """Endpoint handling for ARP mode: only egress needs care."""

    def __init__(self, manager: Any, provider: Any) -> None:
        self.manager = manager
        self.provider = provider

    @property
    def label(self) -> str:
        return self.provider.get_label()

    def process_instance(self, svc_ctx: Any, service: Any, state: EndpointState) -> None:
        """Nothing to advertise in this mode."""

    def clear(self, svc_ctx: Any, state: EndpointState, service: Any) -> None:
        """Handle the loss of all local endpoints."""
        self._clear_egress(state, service)

    def _clear_egress(self, state: EndpointState, service: Any) -> None:
        if not state.last_known_good_endpoint:
            return
        log.warning(
            "existing endpoint has been removed, no remaining endpoints for "
            "leaderElection provider=%s endpoint=%s",
            self.label,
            state.last_known_good_endpoint,
        )
        try:
            self.manager.teardown_egress(
                state.last_known_good_endpoint,
                service.load_balancer_ip,
                service.namespace,
                service.annotations,
            )
        except Exception as exc:  # noqa: BLE001 - logged and carried on
            log.error("error removing redundant egress rules err=%s", exc)

        state.last_known_good_endpoint = ""
        if not _elections_disabled(self.manager.config) and state.cancel is not None:
            state.cancel()
        state.leader_election_active = False

    def get_endpoints(self, service: Any, node_id: str) -> List[str]:
        """Endpoints of the service running on this node."""
        return self._get_local_endpoints(node_id)

    def _get_local_endpoints(self, node_id: str) -> List[str]:
        try:
            return list(self.provider.get_local_endpoints(node_id, self.manager.config))
        except Exception as exc:
            raise EndpointWorkerError(
                f"[{self.label}] error getting local endpoints: {exc}"
            ) from exc

    def _get_all_endpoints(self, service: Any, node_id: str) -> List[str]:
        if (
            _elections_disabled(self.manager.config)
            and service.external_traffic_policy == SERVICE_EXTERNAL_TRAFFIC_POLICY_CLUSTER
        ):
            try:
                return list(self.provider.get_all_endpoints())
            except Exception as exc:
                raise EndpointWorkerError(
                    f"[{self.label}] error getting all endpoints: {exc}"
                ) from exc
        return self._get_local_endpoints(node_id)

    def remove_egress(self, service: Any, state: EndpointState) -> None:
        """Nothing to remove in this mode."""

    def delete(self, service: Any, node_id: str) -> None:
        """Nothing to clean up in this mode."""

    def set_instance_endpoints_status(self, service: Any, endpoints: List[str]) -> None:
        """Nothing to record in this mode."""


class BGPWorker(GenericWorker):
    """Advertises service addresses as BGP hosts."""

    def process_instance(self, svc_ctx: Any, service: Any, state: EndpointState) -> None:
        instance = self.manager.find_service_instance(service)
        if instance is None:
            return
        for network in _networks(instance):
            if network.ip in svc_ctx.configured_networks:
                continue
            log.debug(
                "attempting to advertise BGP service provider=%s ip=%s",
                self.label,
                network.cidr,
            )
            try:
                self.manager.bgp_server.add_host(network.cidr)
            except Exception as exc:  # noqa: BLE001 - logged and carried on
                log.error("error adding BGP host provider=%s err=%s", self.label, exc)
                continue
            log.info(
                "added BGP host provider=%s ip=%s service name=%s namespace=%s",
                self.label,
                network.cidr,
                service.name,
                service.namespace,
            )
            svc_ctx.configured_networks[network.ip] = network
            state.leader_election_active = True

    def clear(self, svc_ctx: Any, state: EndpointState, service: Any) -> None:
        if _elections_disabled(self.manager.config):
            instance = self.manager.find_service_instance(service)
            if instance is not None:
                for network in _networks(instance):
                    try:
                        self.manager.bgp_server.del_host(network.cidr)
                    except Exception as exc:  # noqa: BLE001 - logged
                        log.error(
                            "[endpoint] deleting BGP host provider=%s ip=%s err=%s",
                            self.label,
                            network.cidr,
                            exc,
                        )
                        continue
                    log.info(
                        "[endpoint] deleted BGP host provider=%s ip=%s "
                        "service name=%s namespace=%s",
                        self.label,
                        network.cidr,
                        service.name,
                        service.namespace,
                    )
                    svc_ctx.configured_networks.pop(network.ip, None)
                    state.leader_election_active = False
        self._clear_egress(state, service)

    def get_endpoints(self, service: Any, node_id: str) -> List[str]:
        return self._get_all_endpoints(service, node_id)

    def delete(self, service: Any, node_id: str) -> None:
        if not _elections_disabled(self.manager.config):
            return
        try:
            endpoints = self.get_endpoints(service, node_id)
        except EndpointWorkerError as exc:
            raise EndpointWorkerError(
                f"[{self.label}] error getting endpoints: {exc}"
            ) from exc
        if endpoints:
            clear_bgp_hosts(self.manager, service)


class RoutingTableWorker(GenericWorker):
    """Advertises service addresses through routing table entries."""

    def process_instance(self, svc_ctx: Any, service: Any, state: EndpointState) -> None:
        instance = self.manager.find_service_instance(service)
        if instance is None:
            return
        table_id = self.manager.config.routing_table_id
        for network in _networks(instance):
            if network.ip in svc_ctx.configured_networks or not network.has_endpoints:
                continue
            try:
                network.add_route(False)
            except FileExistsError:
                # The route may come from an older release without a protocol set.
                try:
                    updated = network.update_routes()
                except Exception as exc:
                    raise EndpointWorkerError(
                        f"[{self.label}] error updating existing routes: {exc}"
                    ) from exc
                message = "updated route" if updated else "route already present"
                log.info(
                    "%s provider=%s ip=%s service name=%s namespace=%s "
                    "interface=%s tableID=%s",
                    message,
                    self.label,
                    network.ip,
                    service.name,
                    service.namespace,
                    network.interface,
                    table_id,
                )
                continue
            except Exception as exc:
                raise EndpointWorkerError(
                    f"[{self.label}] error adding route: {exc}"
                ) from exc
            log.info(
                "added route provider=%s ip=%s service name=%s namespace=%s "
                "interface=%s tableID=%s",
                self.label,
                network.ip,
                service.name,
                service.namespace,
                network.interface,
                table_id,
            )
            svc_ctx.configured_networks[network.ip] = network
            state.leader_election_active = True

    def clear(self, svc_ctx: Any, state: EndpointState, service: Any) -> None:
        if _elections_disabled(self.manager.config):
            errors = clear_routes(self.manager, service)
            if not errors:
                svc_ctx.configured_networks.clear()
            for exc in errors:
                log.error("error while clearing routes err=%s", exc)
        self._clear_egress(state, service)

    def get_endpoints(self, service: Any, node_id: str) -> List[str]:
        return self._get_all_endpoints(service, node_id)

    def remove_egress(self, service: Any, state: EndpointState) -> None:
        try:
            self.manager.teardown_egress(
                state.last_known_good_endpoint,
                service.load_balancer_ip,
                service.namespace,
                service.annotations,
            )
        except Exception as exc:  # noqa: BLE001 - logged and carried on
            log.warning("removing redundant egress rules err=%s", exc)

    def delete(self, service: Any, node_id: str) -> None:
        if not _elections_disabled(self.manager.config):
            return
        try:
            endpoints = self.get_endpoints(service, node_id)
        except EndpointWorkerError as exc:
            raise EndpointWorkerError(
                f"[{self.label}] error getting endpoints: {exc}"
            ) from exc
        if endpoints:
            clear_routes(self.manager, service)

    def set_instance_endpoints_status(self, service: Any, endpoints: List[str]) -> None:
        """Mark each network as having endpoints of its own IP family."""
        instance = self.manager.find_service_instance(service)
        if instance is None:
            raise EndpointWorkerError(
                f"failed to find instance for service {service.namespace}/{service.name}"
            )
        for network in _networks(instance):
            if not endpoints:
                network.has_endpoints = False
            elif _is_ipv6(network.ip) == _is_ipv6(endpoints[0]):
                network.has_endpoints = True