"""IPVS load balancer for the API server virtual IP."""

from __future__ import annotations

import enum
import fcntl
import ipaddress
import logging
import os
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Union

log = logging.getLogger(__name__)

ROUNDROBIN = "rr"
TCP = 6
DEFAULT_HEALTH_CHECK_INTERVAL = 5
BACKEND_CHECK_TIMEOUT = 3.0

_SIOCGIFADDR = 0x8915

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class IPVSError(RuntimeError):
    """An IPVS operation failed."""


class AddressFamily(enum.IntEnum):
    """Address family of an IPVS service or destination."""

    INET = socket.AF_INET
    INET6 = socket.AF_INET6


class ForwardType(enum.IntEnum):
    """How IPVS forwards packets to a destination."""

    MASQUERADE = 0
    LOCAL = 1
    TUNNEL = 2
    DIRECT_ROUTE = 3
    BYPASS = 4


@dataclass(frozen=True)
class Service:
    """A virtual service as handed to the IPVS client."""

    address: IPAddress
    port: int
    family: AddressFamily
    netmask: Tuple[int, int]
    protocol: int = TCP
    scheduler: str = ROUNDROBIN


@dataclass(frozen=True)
class Destination:
    """A real server behind a virtual service."""

    address: IPAddress
    port: int
    family: AddressFamily
    weight: int = 1
    fwd_method: ForwardType = ForwardType.MASQUERADE


class IPVSClient(Protocol):
    """Operations the load balancer needs from the kernel IPVS table.

    Implementations raise FileExistsError for duplicates and
    FileNotFoundError for missing entries.
    """

    def destinations(self, service: Service) -> List[Destination]: ...

    def create_service(self, service: Service) -> None: ...

    def remove_service(self, service: Service) -> None: ...

    def create_destination(self, service: Service, dest: Destination) -> None: ...

    def remove_destination(self, service: Service, dest: Destination) -> None: ...


@dataclass(frozen=True)
class BackendEntry:
    """A backend server; also the key of the health table."""

    addr: str
    port: int
    is_local: bool = False

    def check(self, timeout: float = BACKEND_CHECK_TIMEOUT) -> bool:
        """True if a TCP connection to the backend can be opened."""
        try:
            with socket.create_connection((self.addr, self.port), timeout=timeout):
                return True
        except OSError:
            return False


def ip_and_family(address: str) -> Tuple[IPAddress, AddressFamily]:
    """Parse an address; IPv4-mapped IPv6 addresses count as IPv4."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError as exc:
        raise ValueError(f"address '{address}' is not a valid IP address") from exc
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if isinstance(ip, ipaddress.IPv4Address):
        return ip, AddressFamily.INET
    return ip, AddressFamily.INET6


def parse_forwarding_method(method: str) -> ForwardType:
    """Map a forwarding method name to its type; unknown names mean local."""
    methods = {
        "masquerade": ForwardType.MASQUERADE,
        "local": ForwardType.LOCAL,
        "tunnel": ForwardType.TUNNEL,
        "directroute": ForwardType.DIRECT_ROUTE,
        "bypass": ForwardType.BYPASS,
    }
    try:
        return methods[method.lower()]
    except KeyError:
        log.warning("unknown forwarding method. Defaulting to Local")
        return ForwardType.LOCAL


def _enable_proc_sys(path: str, name: str) -> None:
    with open(path, "r+", encoding="ascii") as handle:
        if handle.read().strip() == "1":
            return
        handle.seek(0)
        handle.write("1")
        handle.truncate()
    log.info("sysctl set %s to 1", name)


def _interface_addresses(iface: str, family: AddressFamily) -> Iterable[IPAddress]:
    if family == AddressFamily.INET:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            request = struct.pack("256s", iface.encode()[:15])
            try:
                reply = fcntl.ioctl(sock.fileno(), _SIOCGIFADDR, request)
            except OSError as exc:
                if not os.path.exists(os.path.join("/sys/class/net", iface)):
                    raise OSError(f"getting link '{iface}': {exc}") from exc
                return []
        return [ipaddress.IPv4Address(reply[20:24])]

    found = []
    with open("/proc/net/if_inet6", encoding="ascii") as handle:
        for line in handle:
            fields = line.split()
            if len(fields) >= 6 and fields[5] == iface:
                found.append(ipaddress.IPv6Address(bytes.fromhex(fields[0])))
    return found


class IPVSLoadBalancer:
    """Keeps an IPVS service in step with the health of its backends."""

    def __init__(
        self,
        client: IPVSClient,
        address: str,
        port: int,
        forwarding_method: str = "local",
        backend_health_check_interval: int = DEFAULT_HEALTH_CHECK_INTERVAL,
        network_interface: str = "",
        leader_cancel: Optional[Callable[[], None]] = None,
        signal: Optional[threading.Event] = None,
        *,
        health_check: Optional[Callable[[BackendEntry], bool]] = None,
        local_addresses: Optional[
            Callable[[str, AddressFamily], Iterable[IPAddress]]
        ] = None,
        proc_root: str = "/proc",
        start_health_check: bool = True,
    ) -> None:
        log.info("Starting IPVS LoadBalancer address=%s", address)
        self.client = client
        self.address = address
        self.port = port
        self.network_interface = network_interface
        self.leader_cancel = leader_cancel
        self.signal = signal
        self._health_check = health_check or BackendEntry.check
        self._local_addresses = local_addresses or _interface_addresses

        ip, family = ip_and_family(address)
        self.family = family

        if forwarding_method.lower() == "masquerade":
            _enable_proc_sys(
                os.path.join(proc_root, "sys/net/ipv4/vs/conntrack"),
                "net.ipv4.vs.conntrack",
            )
            if family == AddressFamily.INET6:
                _enable_proc_sys(
                    os.path.join(proc_root, "sys/net/ipv6/conf/all/forwarding"),
                    "net.ipv6.conf.all.forwarding",
                )
            else:
                _enable_proc_sys(
                    os.path.join(proc_root, "sys/net/ipv4/ip_forward"),
                    "net.ipv4.ip_forward",
                )

        netmask = (128, 128) if family == AddressFamily.INET6 else (31, 32)
        self.service = Service(address=ip, port=port, family=family, netmask=netmask)
        self.forwarding_method = parse_forwarding_method(forwarding_method)

        if backend_health_check_interval <= 0:
            backend_health_check_interval = DEFAULT_HEALTH_CHECK_INTERVAL
        self.interval = backend_health_check_interval

        self.backends: Dict[BackendEntry, bool] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if start_health_check:
            self._thread = threading.Thread(target=self._watch, daemon=True)
            self._thread.start()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def remove(self) -> None:
        """Stop health checking and delete the IPVS service."""
        log.info("Stopping IPVS LoadBalancer address=%s", self.address)
        self._stop.set()
        try:
            self.client.remove_service(self.service)
        except OSError as exc:
            raise IPVSError(f"error removing existing IPVS service: {exc}") from exc

    def add_backend(self, address: str, port: int) -> None:
        """Track a backend and, if it is healthy, add it to IPVS."""
        _, family = ip_and_family(address)
        if family != self.family:
            return

        is_local = False
        if self.forwarding_method == ForwardType.LOCAL:
            log.info("checking if backend is local addr=%s", address)
            try:
                is_local = self._is_local(address)
            except (OSError, ValueError) as exc:
                log.error("checking if backend is local err=%s", exc)

        entry = BackendEntry(address, port, is_local)
        with self._lock:
            if entry in self.backends:
                return
            healthy = self._health_check(entry)
            if healthy:
                self._add_destination(address, port)
            self.backends[entry] = healthy

    def remove_backend(self, address: str, port: int) -> None:
        """Forget a backend and remove it from IPVS."""
        entry = BackendEntry(address, port)
        with self._lock:
            if entry in self.backends:
                self._remove_destination(address, port)
                del self.backends[entry]

    def check_backends(self) -> None:
        """Run one round of health checks and update IPVS accordingly."""
        with self._lock:
            for entry, old_status in list(self.backends.items()):
                new_status = self._health_check(entry)
                if new_status:
                    if not old_status:
                        try:
                            self._add_destination(entry.addr, entry.port)
                        except IPVSError as exc:
                            log.error("add backend err=%s", exc)
                        self.backends[entry] = new_status
                    continue

                if old_status:
                    log.info(
                        "healthCheck failed - removing backend address=%s port=%s",
                        entry.addr,
                        entry.port,
                    )
                    try:
                        self._remove_destination(entry.addr, entry.port)
                    except IPVSError as exc:
                        log.error(
                            "failed to remove backend address=%s port=%s err=%s",
                            entry.addr,
                            entry.port,
                            exc,
                        )
                    self.backends[entry] = new_status
                if (
                    self.forwarding_method == ForwardType.LOCAL
                    and not self.local_backend_exists()
                ):
                    if self.signal is not None:
                        self.signal.set()
                    if self.leader_cancel is not None:
                        self.leader_cancel()

    def local_backend_exists(self) -> bool:
        """True if any healthy backend lives on this node."""
        return any(
            entry.is_local and healthy for entry, healthy in self.backends.items()
        )

    def _watch(self) -> None:
        while not self._stop.wait(self.interval):
            self.check_backends()

    def _is_local(self, address: str) -> bool:
        target, family = ip_and_family(address)
        return any(
            addr == target
            for addr in self._local_addresses(self.network_interface, family)
        )

    def _add_destination(self, address: str, port: int) -> None:
        try:
            backends = self.client.destinations(self.service)
        except OSError as exc:
            log.error("querying backends err=%s", exc)
            backends = []

        if not backends:
            try:
                self.client.create_service(self.service)
            except FileExistsError:
                log.warning(
                    "load balancer for API server already exists, "
                    "attempting to remove and re-create"
                )
                try:
                    self.client.remove_service(self.service)
                    self.client.create_service(self.service)
                except OSError as exc:
                    raise IPVSError(f"error re-creating IPVS service: {exc}") from exc
            except OSError as exc:
                log.error(
                    "Unable to create an IPVS service, "
                    "ensure IPVS kernel modules are loaded"
                )
                raise IPVSError(f"IPVS service: {exc}") from exc
            log.info(
                "load-Balancer services created address=%s port=%s",
                self.service.address,
                self.port,
            )

        ip, family = ip_and_family(address)
        if family != self.service.family:
            return

        dest = Destination(
            address=ip,
            port=port,
            family=family,
            weight=1,
            fwd_method=self.forwarding_method,
        )
        try:
            self.client.create_destination(self.service, dest)
        except FileExistsError:
            return
        except OSError as exc:
            raise IPVSError(f"error creating backend: {exc}") from exc
        log.info(
            "backend added src addr=%s src port=%s dst addr=%s dst port=%s",
            self.service.address,
            self.port,
            address,
            port,
        )

    def _remove_destination(self, address: str, port: int) -> None:
        ip, family = ip_and_family(address)
        if family != self.service.family:
            return
        dest = Destination(address=ip, port=port, family=family, weight=1)
        try:
            self.client.remove_destination(self.service, dest)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise IPVSError(f"error removing backend: {exc}") from exc