import logging

import pytest

from kubevip import config
from kubevip.config import (
    AUTO,
    Config,
    Etcd,
    InterfaceError,
    KubernetesLeaderElection,
    LoadBalancer,
    Port,
    is_valid_interface,
)


@pytest.fixture
def sysfs(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "SYS_CLASS_NET", str(tmp_path))

    def add(name, state):
        directory = tmp_path / name
        directory.mkdir()
        (directory / "operstate").write_text(state + "\n")

    return add


def test_config_inherits_leader_election_fields():
    cfg = Config(lease_name="plndr-cp-lock", interface="eth0")
    assert isinstance(cfg, KubernetesLeaderElection)
    assert cfg.lease_name == "plndr-cp-lock"
    assert cfg.enable_leader_election is False
    assert cfg.lease_annotations == {}


def test_mutable_defaults_are_independent():
    first, second = Config(), Config()
    first.bgp_peers.append("peer")
    first.etcd.endpoints.append("endpoint")
    assert second.bgp_peers == []
    assert second.etcd == Etcd()


def test_load_balancer_holds_ports():
    lb = LoadBalancer(name="api", ports=[Port(type="tcp", port=6443)])
    assert lb.ports[0].port == 6443
    assert lb.bind_to_vip is False


def test_auto_is_always_valid(sysfs):
    assert is_valid_interface(AUTO) is None


def test_up_interface_is_valid(sysfs):
    sysfs("eth0", "up")
    assert is_valid_interface("eth0") is None


def test_down_interface_rejected(sysfs):
    sysfs("eth1", "down")
    with pytest.raises(InterfaceError, match="eth1 is not up"):
        is_valid_interface("eth1")


def test_missing_interface_rejected(sysfs):
    with pytest.raises(InterfaceError, match="get nosuch failed"):
        is_valid_interface("nosuch")


def test_unknown_state_warns(sysfs, caplog):
    sysfs("lo", "unknown")
    with caplog.at_level(logging.WARNING, logger="kubevip.config"):
        is_valid_interface("lo")
    assert any("unknown" in record.getMessage() for record in caplog.records)


def test_check_interface_empty_config(sysfs):
    assert Config().check_interface() is None


def test_check_interface_services_interface_reported(sysfs):
    sysfs("eth0", "up")
    sysfs("eth1", "down")
    cfg = Config(interface="eth0", services_interface="eth1")
    with pytest.raises(InterfaceError, match="eth1 is not valid interface"):
        cfg.check_interface()


def test_check_interface_both_valid(sysfs):
    sysfs("eth0", "up")
    cfg = Config(interface="eth0", services_interface=AUTO)
    assert cfg.check_interface() is None