"""Reacts to endpoint watch events for a load-balanced service.

Collaborators are duck-typed, as in :mod:`kubevip.endpoint_workers`. The
provider also needs ``load_object(obj, cancel)``. Watch events carry the
changed object as ``event.object``. The manager also needs
``start_services_leader_election(stop_event, service)``. A service context
may have a ``stop_event`` (:class:`threading.Event`). When it is set, any
leader election started for the service stops as well.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from typing import Any, List, Optional

from kubevip.annotations import ACTIVE_ENDPOINT, ACTIVE_ENDPOINT_IPV6, EGRESS, EGRESS_IPV6
from kubevip.endpoint_workers import (
    EndpointState,
    EndpointWorkerError,
    GenericWorker,
    new_endpoint_worker,
)

log = logging.getLogger(__name__)

ADDRESS_TYPE_IPV6 = "IPv6"

_POLL_INTERVAL = 0.1


def _is_ipv4(text: str) -> bool:
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv4Address):
        return True
    return ip.ipv4_mapped is not None


class _ChildStop:
    """A stop flag that is also set once its parent is set."""

    def __init__(self, parent: Optional[threading.Event] = None) -> None:
        self._own = threading.Event()
        self._parent = parent

    def set(self) -> None:
        self._own.set()

    def is_set(self) -> bool:
        return self._own.is_set() or (
            self._parent is not None and self._parent.is_set()
        )

    def wait(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.is_set():
            if deadline is None:
                step = _POLL_INTERVAL
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                step = min(_POLL_INTERVAL, remaining)
            self._own.wait(step)
        return self.is_set()


def start_leader_election(stop_event: Any, manager: Any, state: EndpointState, service: Any) -> None:
    """Run the service leader election again and again until stopped.

    This blocks the calling thread.
    """
    while not stop_event.is_set():
        state.leader_election_active = True
        try:
            manager.start_services_leader_election(stop_event, service)
        except Exception as exc:  # noqa: BLE001 - logged, then retried
            log.error("%s", exc)
        state.leader_election_active = False
    state.leader_election_active = False


class Processor:
    """Applies endpoint changes of one provider to the node's state."""

    def __init__(self, manager: Any, provider: Any) -> None:
        self.manager = manager
        self.provider = provider
        self.worker: Optional[GenericWorker] = None
        self.leader_thread: Optional[threading.Thread] = None

    @property
    def label(self) -> str:
        return self.provider.get_label()

    def add_modify(
        self, svc_ctx: Any, event: Any, state: EndpointState, service: Any, node_id: str
    ) -> bool:
        """Handle an added or modified endpoints object.

        Returns True if the event should be skipped: the service wants IPv6
        egress, but the endpoint found is IPv4.
        """
        try:
            self.provider.load_object(event.object, state.cancel)
        except Exception as exc:
            raise EndpointWorkerError(
                f"[{self.label}] error loading k8s object: {exc}"
            ) from exc

        self.worker = new_endpoint_worker(self.manager, self.provider)
        endpoints = self.worker.get_endpoints(service, node_id)

        try:
            self.worker.set_instance_endpoints_status(service, endpoints)
        except Exception as exc:  # noqa: BLE001 - logged and carried on
            log.error("updating instance err=%s", exc)

        config = self.manager.config
        if endpoints:
            if service.annotations.get(EGRESS_IPV6) == "true" and _is_ipv4(endpoints[0]):
                return True

            self._update_last_known_good_endpoint(state, endpoints, service)

            if not state.leader_election_active and config.enable_services_election:
                self._start_election(svc_ctx, state, service)

            if not config.enable_services_election and not config.enable_leader_election:
                try:
                    self.worker.process_instance(svc_ctx, service, state)
                except Exception as exc:
                    raise EndpointWorkerError(
                        f"failed to process non-empty instance: {exc}"
                    ) from exc
        else:
            self.worker.clear(svc_ctx, state, service)

        self._update_annotations(service, state)

        log.debug(
            "watcher provider=%s service name=%s namespace=%s endpoints=%d "
            "last endpoint=%s active leader election=%s",
            self.label,
            service.name,
            service.namespace,
            len(endpoints),
            state.last_known_good_endpoint,
            state.leader_election_active,
        )
        return False

    def delete(self, service: Any, node_id: str) -> None:
        """Handle deletion of the service's endpoints."""
        worker = self.worker or new_endpoint_worker(self.manager, self.provider)
        try:
            worker.delete(service, node_id)
        except Exception as exc:
            raise EndpointWorkerError(
                f"[{self.label}] error deleting service: {exc}"
            ) from exc

    def _start_election(self, svc_ctx: Any, state: EndpointState, service: Any) -> None:
        stop = _ChildStop(getattr(svc_ctx, "stop_event", None))
        state.cancel = stop.set
        self.leader_thread = threading.Thread(
            target=start_leader_election,
            args=(stop, self.manager, state, service),
            daemon=True,
        )
        self.leader_thread.start()

    def _update_last_known_good_endpoint(
        self, state: EndpointState, endpoints: List[str], service: Any
    ) -> None:
        if not state.last_known_good_endpoint:
            state.last_known_good_endpoint = endpoints[0]
            return

        for endpoint in endpoints:
            log.info("endpoint address=%s", endpoint)
        if state.last_known_good_endpoint in endpoints:
            return

        self.worker.remove_egress(service, state)
        config = self.manager.config
        if state.leader_election_active and (
            config.enable_services_election or config.enable_leader_election
        ):
            log.warning(
                "existing endpoint has been removed, restarting leaderElection "
                "provider=%s endpoint=%s",
                self.label,
                state.last_known_good_endpoint,
            )
            if state.cancel is not None:
                state.cancel()
            state.leader_election_active = False
        state.last_known_good_endpoint = endpoints[0]

    def _update_annotations(self, service: Any, state: EndpointState) -> None:
        if service.annotations.get(EGRESS) != "true":
            return
        key = ACTIVE_ENDPOINT
        if (
            self.manager.config.enable_endpoint_slices
            and self.provider.get_protocol() == ADDRESS_TYPE_IPV6
        ):
            key = ACTIVE_ENDPOINT_IPV6
        service.annotations[key] = state.last_known_good_endpoint