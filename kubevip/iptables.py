"""Thin wrapper around the iptables / ip6tables command line tools."""

from __future__ import annotations

import enum
import fcntl
import ipaddress
import os
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

TABLE_FILTER = "filter"
TABLE_MANGLE = "mangle"
TABLE_NAT = "nat"
CHAIN_INPUT = "INPUT"
CHAIN_PREROUTING = "PREROUTING"
CHAIN_POSTROUTING = "POSTROUTING"

# flock is used on this file by iptables itself; "/var/run" is assumed to
# exist (or be a symlink to "/run") on every distribution.
XTABLES_LOCK_FILE_PATH = "/var/run/xtables.lock"
DEFAULT_FILE_PERM = 0o600

_EXISTS_ERR = 1
_MSG_NO_RULE_EXIST = "Bad rule (does a matching rule exist in that chain?).\n"
_MSG_NO_CHAIN_EXIST = "No chain/target/match by that name.\n"

_VERSION_RE = re.compile(r"v([0-9]+)\.([0-9]+)\.([0-9]+)(?:\s+\((\w+))?", re.ASCII)
_COUNTER_RE = re.compile(r"^\[([0-9]+):([0-9]+)\] ")

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class Protocol(enum.IntEnum):
    """IP family an :class:`IPTables` instance operates on."""

    IPV4 = 0
    IPV6 = 1


class IPTablesError(Exception):
    """An iptables invocation exited with a non-zero status."""

    def __init__(self, command: List[str], exit_status: int, msg: str) -> None:
        self.command = list(command)
        self.exit_status = exit_status
        self.msg = msg
        super().__init__(
            f"running [{' '.join(self.command)}]: exit status {exit_status}: {msg}"
        )

    def is_not_exist(self) -> bool:
        """True if the failure was caused by a missing chain or rule."""
        if self.exit_status != 1:
            return False
        return _MSG_NO_RULE_EXIST in self.msg or _MSG_NO_CHAIN_EXIST in self.msg


@dataclass
class Stat:
    """One structured row of ``iptables -L -n -v -x`` output."""

    packets: int
    bytes: int
    target: str
    protocol: str
    opt: str
    input: str
    output: str
    source: Network
    destination: Network
    options: str


class XtablesLock:
    """Best-effort, non-blocking exclusive lock on the xtables lock file."""

    def __init__(self, path: Union[str, os.PathLike] = XTABLES_LOCK_FILE_PATH) -> None:
        self.path = os.fspath(path)
        self._mutex = threading.Lock()
        self._fd: Optional[int] = None

    def try_lock(self) -> bool:
        """Try to take the lock without blocking.

        Returns False if another holder already has it; other errors are raised.
        """
        fd = os.open(self.path, os.O_RDONLY | os.O_CREAT, DEFAULT_FILE_PERM)
        self._mutex.acquire()
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            self._mutex.release()
            os.close(fd)
            return False
        except OSError:
            self._mutex.release()
            os.close(fd)
            raise
        self._fd = fd
        return True

    def release(self) -> None:
        """Close the lock file, which releases the lock."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.close(fd)
        finally:
            self._mutex.release()

    def __enter__(self) -> bool:
        return self.try_lock()

    def __exit__(self, *exc_info) -> None:
        self.release()


def get_iptables_command(proto: Protocol, nftables: bool) -> str:
    """Name of the binary to use for the given family and backend."""
    if proto == Protocol.IPV6:
        return "ip6tables-nft" if nftables else "ip6tables-legacy"
    return "iptables-nft" if nftables else "iptables-legacy"


def extract_iptables_version(text: str) -> Tuple[int, int, int, str]:
    """Extract (major, minor, patch, mode) from ``iptables --version`` output."""
    match = _VERSION_RE.search(text)
    if match is None:
        raise ValueError(f"no iptables version found in string: {text}")
    mode = match.group(4) or "legacy"
    return int(match.group(1)), int(match.group(2)), int(match.group(3)), mode


def filter_rule_output(rule: str) -> str:
    """Normalise nftables-mode counter output to ``-S`` style."""
    match = _COUNTER_RE.match(rule)
    if match is None:
        return rule
    rest = rule[match.end():]
    return f"{rest} -c {match.group(1)} {match.group(2)}"


def get_iptables_rule_specification(rule: str, specification: str) -> str:
    """Return the word following ``specification`` in ``rule``, or ''."""
    parts = rule.split(" ")
    for part, following in zip(parts, parts[1:]):
        if part == specification:
            return following
    return ""


def _has_check_command(v: Tuple[int, int, int]) -> bool:
    return v >= (1, 4, 11)


def _has_wait_command(v: Tuple[int, int, int]) -> bool:
    return v >= (1, 4, 20)


def _wait_supports_seconds(v: Tuple[int, int, int]) -> bool:
    return v[:2] >= (1, 6)


def _has_random_fully(v: Tuple[int, int, int]) -> bool:
    return v >= (1, 6, 2)


def _append_subnet(addr: str) -> str:
    if "/" in addr:
        return addr
    if "." not in addr:
        return addr + "/128"
    return addr + "/32"


def _is_ip_or_cidr(text: str) -> bool:
    try:
        ipaddress.ip_interface(text)
    except ValueError:
        return False
    return True


def _parse_uint(text: str) -> int:
    if not text or not text.isalnum():
        raise ValueError(f"invalid unsigned integer: {text!r}")
    lower = text.lower()
    if lower.startswith(("0x", "0o", "0b")):
        value = int(text, 0)
    elif len(text) > 1 and text[0] == "0":
        value = int(text, 8)
    else:
        value = int(text, 10)
    if value >= 1 << 64:
        raise ValueError(f"value out of range: {text!r}")
    return value


def _parse_cidr(text: str) -> Network:
    if "/" not in text:
        raise ValueError(f"invalid CIDR address: {text}")
    return ipaddress.ip_network(text, strict=False)


class IPTables:
    """Runs iptables commands for one IP family."""

    def __init__(
        self,
        proto: Protocol = Protocol.IPV4,
        timeout: int = 0,
        nftables: bool = False,
        lock_path: Union[str, os.PathLike] = XTABLES_LOCK_FILE_PATH,
    ) -> None:
        self.proto = Protocol(proto)
        self.timeout = timeout
        self.nftables = nftables
        self.lock_path = lock_path

        command = get_iptables_command(self.proto, nftables)
        path = shutil.which(command)
        if path is None:
            raise FileNotFoundError(f"executable file not found in $PATH: {command}")
        self.path = path

        proc = subprocess.run(
            [path, "--version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
        )
        if proc.returncode != 0:
            raise RuntimeError(
                f"could not get iptables version: exit status {proc.returncode}"
            )
        version_text = proc.stdout
        try:
            v1, v2, v3, mode = extract_iptables_version(version_text)
        except ValueError as exc:
            raise ValueError(
                f"failed to extract iptables version from [{version_text}]: {exc}"
            ) from exc

        self.version = (v1, v2, v3)
        self.mode = mode
        self.has_check = _has_check_command(self.version)
        self.has_wait = _has_wait_command(self.version)
        self.wait_supports_seconds = _wait_supports_seconds(self.version)
        self.has_random_fully = _has_random_fully(self.version)

    # -- rules -------------------------------------------------------------

    def exists(self, table: str, chain: str, *args: str) -> bool:
        """Whether the rule spec is present in table/chain."""
        if not self.has_check:
            return self._exists_for_old_iptables(table, chain, args)
        try:
            self._run("-t", table, "-C", chain, *args)
        except IPTablesError as exc:
            if exc.exit_status == 1:
                return False
            raise
        return True

    def insert(self, table: str, chain: str, pos: int, *args: str) -> None:
        self._run("-t", table, "-I", chain, str(pos), *args)

    def insert_unique(self, table: str, chain: str, pos: int, *args: str) -> None:
        """Insert the rule unless it is already anywhere in the chain."""
        if not self.exists(table, chain, *args):
            self.insert(table, chain, pos, *args)

    def append(self, table: str, chain: str, *args: str) -> None:
        self._run("-t", table, "-A", chain, *args)

    def append_unique(self, table: str, chain: str, *args: str) -> None:
        """Append the rule unless it already exists."""
        if not self.exists(table, chain, *args):
            self.append(table, chain, *args)

    def delete(self, table: str, chain: str, *args: str) -> None:
        self._run("-t", table, "-D", chain, *args)

    def delete_if_exists(self, table: str, chain: str, *args: str) -> None:
        if self.exists(table, chain, *args):
            self.delete(table, chain, *args)

    # -- listing -----------------------------------------------------------

    def list_by_id(self, table: str, chain: str, rule_id: int) -> str:
        return self._execute_list(["-t", table, "-S", chain, str(rule_id)])[0]

    def list_rules(self, table: str, chain: str) -> List[str]:
        return self._execute_list(["-t", table, "-S", chain])

    def list_with_counters(self, table: str, chain: str) -> List[str]:
        return self._execute_list(["-t", table, "-v", "-S", chain])

    def list_chains(self, table: str) -> List[str]:
        """Names of built-in (-P) and user (-N) chains in the table."""
        chains = []
        for line in self._execute_list(["-t", table, "-S"]):
            if not line.startswith(("-P", "-N")):
                break
            chains.append(line.split()[1])
        return chains

    def chain_exists(self, table: str, chain: str) -> bool:
        # "-S chain 1" succeeds for an existing chain even if rule 1 is absent.
        try:
            self._run("-t", table, "-S", chain, "1")
        except IPTablesError as exc:
            if exc.exit_status == 1:
                return False
            raise
        return True

    def stats(self, table: str, chain: str) -> List[List[str]]:
        """Rule rows with packet and byte counters, ten fields each."""
        lines = self._execute_list(["-t", table, "-L", chain, "-n", "-v", "-x"])
        ipv6 = self.proto == Protocol.IPV6
        rows = []
        # The first two lines are the chain name and the column header.
        for line in lines[2:]:
            fields = line.strip().split()
            # ip6tables leaves the "opt" column blank, which split() loses.
            if ipv6 and _is_ip_or_cidr(fields[6]):
                fields = fields[:4] + ["  "] + fields[4:]
            fields[7] = _append_subnet(fields[7])
            fields[8] = _append_subnet(fields[8])
            rows.append(fields[:9] + [" ".join(fields[9:])])
        return rows

    def parse_stat(self, stat: List[str]) -> Stat:
        """Turn one row from :meth:`stats` into a :class:`Stat`."""
        if len(stat) < 10:
            raise ValueError("stat contained fewer fields than expected")
        try:
            packets = _parse_uint(stat[0])
        except ValueError as exc:
            raise ValueError(f"could not parse packets: {exc}") from exc
        try:
            byte_count = _parse_uint(stat[1])
        except ValueError as exc:
            raise ValueError(f"could not parse bytes: {exc}") from exc
        try:
            source = _parse_cidr(stat[7])
        except ValueError as exc:
            raise ValueError(f"could not parse source: {exc}") from exc
        try:
            destination = _parse_cidr(stat[8])
        except ValueError as exc:
            raise ValueError(f"could not parse destination: {exc}") from exc
        return Stat(
            packets=packets,
            bytes=byte_count,
            target=stat[2],
            protocol=stat[3],
            opt=stat[4],
            input=stat[5],
            output=stat[6],
            source=source,
            destination=destination,
            options=stat[9],
        )

    def structured_stats(self, table: str, chain: str) -> List[Stat]:
        return [self.parse_stat(row) for row in self.stats(table, chain)]

    # -- chains ------------------------------------------------------------

    def new_chain(self, table: str, chain: str) -> None:
        """Create a chain; fails if it already exists."""
        self._run("-t", table, "-N", chain)

    def clear_chain(self, table: str, chain: str) -> None:
        """Flush the chain, creating it first if needed."""
        try:
            self.new_chain(table, chain)
        except IPTablesError as exc:
            if exc.exit_status != _EXISTS_ERR:
                raise
            self._run("-t", table, "-F", chain)

    def rename_chain(self, table: str, old_chain: str, new_chain: str) -> None:
        self._run("-t", table, "-E", old_chain, new_chain)

    def delete_chain(self, table: str, chain: str) -> None:
        """Delete an empty chain."""
        self._run("-t", table, "-X", chain)

    def clear_and_delete_chain(self, table: str, chain: str) -> None:
        if not self.chain_exists(table, chain):
            return
        self._run("-t", table, "-F", chain)
        self._run("-t", table, "-X", chain)

    def clear_all(self) -> None:
        self._run("-F")

    def delete_all(self) -> None:
        self._run("-X")

    def change_policy(self, table: str, chain: str, target: str) -> None:
        self._run("-t", table, "-P", chain, target)

    # -- internals ---------------------------------------------------------

    def _exists_for_old_iptables(self, table: str, chain: str, rulespec) -> bool:
        wanted = " ".join(["-A", chain, *rulespec])
        return wanted in self._run("-t", table, "-S")

    def _execute_list(self, args: List[str]) -> List[str]:
        rules = self._run(*args).split("\n")
        if rules and rules[-1] == "":
            rules.pop()
        return [filter_rule_output(rule) for rule in rules]

    def _run(self, *args: str) -> str:
        cmd = [self.path, *args]
        if self.has_wait:
            cmd.append("--wait")
            if self.timeout != 0 and self.wait_supports_seconds:
                cmd.append(str(self.timeout))
            return self._execute(cmd)

        lock = XtablesLock(self.lock_path)
        acquired = lock.try_lock()
        try:
            return self._execute(cmd)
        finally:
            if acquired:
                lock.release()

    @staticmethod
    def _execute(cmd: List[str]) -> str:
        proc = subprocess.run(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
        )
        if proc.returncode != 0:
            raise IPTablesError(cmd, proc.returncode, proc.stderr or "")
        return proc.stdout or ""