import ipaddress
import subprocess

import pytest

from kubevip.iptables import (
    IPTables,
    IPTablesError,
    Protocol,
    XtablesLock,
    extract_iptables_version,
    filter_rule_output,
    get_iptables_command,
    get_iptables_rule_specification,
)


class FakeRunner:
    def __init__(self, version="iptables v1.8.7 (nf_tables)", responses=None, version_rc=0):
        self.version = version
        self.version_rc = version_rc
        self.responses = list(responses or [])
        self.calls = []

    def __call__(self, args, **kwargs):
        args = list(args)
        if args[1:] == ["--version"]:
            return subprocess.CompletedProcess(args, self.version_rc, stdout=self.version, stderr="")
        self.calls.append(args)
        if self.responses:
            rc, out, err = self.responses.pop(0)
        else:
            rc, out, err = 0, "", ""
        return subprocess.CompletedProcess(args, rc, stdout=out, stderr=err)


@pytest.fixture
def which(monkeypatch):
    monkeypatch.setattr("kubevip.iptables.shutil.which", lambda name: f"/sbin/{name}")


def make(monkeypatch, runner, **kwargs):
    monkeypatch.setattr("kubevip.iptables.subprocess.run", runner)
    return IPTables(**kwargs)


def test_get_iptables_command():
    assert get_iptables_command(Protocol.IPV4, False) == "iptables-legacy"
    assert get_iptables_command(Protocol.IPV4, True) == "iptables-nft"
    assert get_iptables_command(Protocol.IPV6, False) == "ip6tables-legacy"
    assert get_iptables_command(Protocol.IPV6, True) == "ip6tables-nft"


def test_extract_version_with_and_without_mode():
    assert extract_iptables_version("iptables v1.3.66") == (1, 3, 66, "legacy")
    assert extract_iptables_version("iptables v1.8.7 (nf_tables)") == (1, 8, 7, "nf_tables")


def test_extract_version_invalid():
    with pytest.raises(ValueError):
        extract_iptables_version("no version here")


def test_filter_rule_output():
    assert filter_rule_output("[3:4] -A INPUT -j ACCEPT") == "-A INPUT -j ACCEPT -c 3 4"
    assert filter_rule_output("-A INPUT -j ACCEPT") == "-A INPUT -j ACCEPT"


def test_get_rule_specification():
    rule = "-A POSTROUTING -s 10.0.0.1/32 -j SNAT"
    assert get_iptables_rule_specification(rule, "-s") == "10.0.0.1/32"
    assert get_iptables_rule_specification(rule, "SNAT") == ""
    assert get_iptables_rule_specification(rule, "-x") == ""


def test_error_is_not_exist():
    err = IPTablesError(["iptables", "-D"], 1, "No chain/target/match by that name.\n")
    assert err.is_not_exist()
    assert "exit status 1" in str(err)
    assert not IPTablesError(["iptables"], 2, "No chain/target/match by that name.\n").is_not_exist()
    assert not IPTablesError(["iptables"], 1, "other\n").is_not_exist()


def test_constructor_features(monkeypatch, which):
    ipt = make(monkeypatch, FakeRunner(), nftables=True, timeout=5)
    assert ipt.path == "/sbin/iptables-nft"
    assert ipt.version == (1, 8, 7)
    assert ipt.mode == "nf_tables"
    assert ipt.has_check and ipt.has_wait and ipt.has_random_fully


def test_constructor_missing_binary(monkeypatch):
    monkeypatch.setattr("kubevip.iptables.shutil.which", lambda name: None)
    with pytest.raises(FileNotFoundError):
        IPTables()


def test_constructor_version_failure(monkeypatch, which):
    with pytest.raises(RuntimeError):
        make(monkeypatch, FakeRunner(version_rc=1))


def test_wait_and_timeout_flags(monkeypatch, which):
    runner = FakeRunner()
    ipt = make(monkeypatch, runner, timeout=5)
    ipt.append("nat", "POSTROUTING", "-j", "MASQUERADE")
    assert runner.calls[0] == [
        "/sbin/iptables-legacy", "-t", "nat", "-A", "POSTROUTING", "-j", "MASQUERADE", "--wait", "5"
    ]


def test_exists_results(monkeypatch, which):
    runner = FakeRunner(responses=[(0, "", ""), (1, "", "Bad rule"), (2, "", "boom")])
    ipt = make(monkeypatch, runner)
    assert ipt.exists("filter", "INPUT", "-j", "ACCEPT") is True
    assert ipt.exists("filter", "INPUT", "-j", "ACCEPT") is False
    with pytest.raises(IPTablesError) as info:
        ipt.exists("filter", "INPUT", "-j", "ACCEPT")
    assert info.value.exit_status == 2
    assert runner.calls[0][1:5] == ["-t", "filter", "-C", "INPUT"]


def test_insert_unique_skips_existing(monkeypatch, which):
    runner = FakeRunner(responses=[(0, "", "")])
    ipt = make(monkeypatch, runner)
    ipt.insert_unique("filter", "INPUT", 1, "-j", "DROP")
    assert len(runner.calls) == 1


def test_insert_unique_inserts_missing(monkeypatch, which):
    runner = FakeRunner(responses=[(1, "", ""), (0, "", "")])
    ipt = make(monkeypatch, runner)
    ipt.insert_unique("filter", "INPUT", 1, "-j", "DROP")
    assert runner.calls[1][1:8] == ["-t", "filter", "-I", "INPUT", "1", "-j", "DROP"]


def test_append_unique_and_delete_if_exists(monkeypatch, which):
    runner = FakeRunner(responses=[(1, "", ""), (0, "", ""), (0, "", ""), (0, "", "")])
    ipt = make(monkeypatch, runner)
    ipt.append_unique("nat", "OUT", "-j", "X")
    ipt.delete_if_exists("nat", "OUT", "-j", "X")
    assert [call[3] for call in runner.calls] == ["-C", "-A", "-C", "-D"]


def test_list_rules_filters_and_strips(monkeypatch, which):
    runner = FakeRunner(responses=[(0, "-N FOO\n[1:2] -A FOO -j ACCEPT\n", "")])
    ipt = make(monkeypatch, runner)
    assert ipt.list_rules("filter", "FOO") == ["-N FOO", "-A FOO -j ACCEPT -c 1 2"]


def test_list_by_id(monkeypatch, which):
    runner = FakeRunner(responses=[(0, "-A FOO -j ACCEPT\n", "")])
    ipt = make(monkeypatch, runner)
    assert ipt.list_by_id("filter", "FOO", 1) == "-A FOO -j ACCEPT"
    assert runner.calls[0][1:6] == ["-t", "filter", "-S", "FOO", "1"]


def test_list_chains(monkeypatch, which):
    out = "-P INPUT ACCEPT\n-P OUTPUT ACCEPT\n-N Custom\n-A Custom -j RETURN\n"
    ipt = make(monkeypatch, FakeRunner(responses=[(0, out, "")]))
    assert ipt.list_chains("filter") == ["INPUT", "OUTPUT", "Custom"]


def test_chain_exists(monkeypatch, which):
    ipt = make(monkeypatch, FakeRunner(responses=[(0, "", ""), (1, "", "")]))
    assert ipt.chain_exists("filter", "A") is True
    assert ipt.chain_exists("filter", "B") is False


def test_clear_chain_flushes_existing(monkeypatch, which):
    runner = FakeRunner(responses=[(1, "", "Chain already exists.\n"), (0, "", "")])
    ipt = make(monkeypatch, runner)
    ipt.clear_chain("nat", "KV")
    assert runner.calls[1][1:5] == ["-t", "nat", "-F", "KV"]


def test_clear_chain_other_error(monkeypatch, which):
    ipt = make(monkeypatch, FakeRunner(responses=[(4, "", "perm")]))
    with pytest.raises(IPTablesError):
        ipt.clear_chain("nat", "KV")


def test_clear_and_delete_missing_chain(monkeypatch, which):
    runner = FakeRunner(responses=[(1, "", "")])
    ipt = make(monkeypatch, runner)
    ipt.clear_and_delete_chain("nat", "KV")
    assert len(runner.calls) == 1


def test_clear_and_delete_existing_chain(monkeypatch, which):
    runner = FakeRunner()
    ipt = make(monkeypatch, runner)
    ipt.clear_and_delete_chain("nat", "KV")
    assert [call[3] for call in runner.calls] == ["-S", "-F", "-X"]


def test_stats_and_structured_ipv4(monkeypatch, which):
    out = (
        "Chain INPUT (policy ACCEPT 0 packets, 0 bytes)\n"
        "    pkts      bytes target     prot opt in     out     source               destination\n"
        "       5      300 ACCEPT     tcp  --  *      *       10.0.0.1             0.0.0.0/0            tcp dpt:22\n"
    )
    ipt = make(monkeypatch, FakeRunner(responses=[(0, out, ""), (0, out, "")]))
    rows = ipt.stats("filter", "INPUT")
    assert rows == [["5", "300", "ACCEPT", "tcp", "--", "*", "*", "10.0.0.1/32", "0.0.0.0/0", "tcp dpt:22"]]
    stats = ipt.structured_stats("filter", "INPUT")
    assert stats[0].packets == 5
    assert stats[0].bytes == 300
    assert stats[0].source == ipaddress.ip_network("10.0.0.1/32")
    assert stats[0].options == "tcp dpt:22"


def test_stats_ipv6_inserts_empty_opt(monkeypatch, which):
    out = (
        "Chain INPUT (policy ACCEPT 0 packets, 0 bytes)\n"
        "    pkts      bytes target     prot opt in     out     source               destination\n"
        "       0        0 ACCEPT     all      *      *       ::1                  ::/0\n"
    )
    ipt = make(monkeypatch, FakeRunner(responses=[(0, out, "")]), proto=Protocol.IPV6)
    rows = ipt.stats("filter", "INPUT")
    assert rows[0][4] == "  "
    assert rows[0][7] == "::1/128"
    assert rows[0][9] == ""
    assert len(rows[0]) == 10


def test_parse_stat_errors(monkeypatch, which):
    ipt = make(monkeypatch, FakeRunner())
    with pytest.raises(ValueError):
        ipt.parse_stat(["1", "2"])
    with pytest.raises(ValueError):
        ipt.parse_stat(["x", "2", "A", "tcp", "--", "*", "*", "1.1.1.1/32", "0.0.0.0/0", ""])
    with pytest.raises(ValueError):
        ipt.parse_stat(["1", "2", "A", "tcp", "--", "*", "*", "1.1.1.1", "0.0.0.0/0", ""])


def test_old_iptables_uses_lock_and_listing(monkeypatch, which, tmp_path):
    out = "-P INPUT ACCEPT\n-A INPUT -s 1.2.3.4/32 -j DROP\n"
    runner = FakeRunner(version="iptables v1.4.7", responses=[(0, out, ""), (0, out, "")])
    ipt = make(monkeypatch, runner, lock_path=tmp_path / "xtables.lock")
    assert not ipt.has_check and not ipt.has_wait
    assert ipt.exists("filter", "INPUT", "-s", "1.2.3.4/32", "-j", "DROP") is True
    assert ipt.exists("filter", "INPUT", "-j", "ACCEPT") is False
    assert "--wait" not in runner.calls[0]
    assert (tmp_path / "xtables.lock").exists()


def test_lock_contention(tmp_path):
    path = tmp_path / "xtables.lock"
    first = XtablesLock(path)
    second = XtablesLock(path)
    assert first.try_lock() is True
    assert second.try_lock() is False
    first.release()
    assert second.try_lock() is True
    second.release()


def test_lock_context_manager(tmp_path):
    path = tmp_path / "xtables.lock"
    with XtablesLock(path) as acquired:
        assert acquired is True
        assert XtablesLock(path).try_lock() is False
    other = XtablesLock(path)
    assert other.try_lock() is True
    other.release()