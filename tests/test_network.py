import re

import pytest

from qemu_manager.modules.network import NetworkModule, network_args, random_mac
from qemu_manager.validator import Validator


@pytest.fixture
def module(services):
  return NetworkModule(services)


@pytest.fixture
def machines(store):
  for name in ("vm1", "vm2"):
    store.insert("virtual_machine", {"name": name, "platform": "x86_64", "memory": 512, "cpu": 1, "boot": "c"})
  store.insert("network_interface", {"machine_name": "vm1", "mac": "52:54:00:00:00:01"})
  return ["vm1", "vm2"]


def nic_form(**overrides):
  form = {"machine": "vm2", "mac": "52:54:00:00:00:02", "model": "e1000", "ip": "", "netmask": "", "gateway": "", "dns": ""}
  form.update(overrides)
  return form


def forward_form(**overrides):
  form = {"machine": "vm1", "protocol": "tcp", "host_port": "8080", "guest_port": "80", "guest_ip": ""}
  form.update(overrides)
  return form


class TestNetworkArgs:
  def test_defaults_without_interface(self, store):
    assert network_args(store, "vm9") == ["-netdev", "user,id=net0", "-device", "virtio-net-pci,netdev=net0"]

  def test_forwards_and_interface(self, store, machines):
    store.insert("port_forwarding", {"machine_name": "vm1", "protocol": "tcp", "host_port": 2222, "guest_port": 22})
    store.insert("port_forwarding", {
      "machine_name": "vm1", "protocol": "udp", "host_port": 5353, "guest_port": 53, "guest_ip": "10.0.2.15",
    })
    assert network_args(store, "vm1") == [
      "-netdev", "user,id=net0,hostfwd=tcp::2222-:22,hostfwd=udp::5353-10.0.2.15:53",
      "-device", "virtio-net-pci,netdev=net0,mac=52:54:00:00:00:01",
    ]

  def test_random_mac_uses_qemu_prefix(self):
    assert re.fullmatch(r"52:54:00(:[0-9a-f]{2}){3}", random_mac())


class TestInterfaces:
  def test_create(self, module, make_ctx, store, machines):
    out = module.manage(make_ctx(method="POST", form=nic_form(ip="10.0.2.20", dns="1.1.1.1")), ["create"])
    assert "Network interface created" in out
    row = store.first("network_interface", {"machine_name": "vm2"})
    assert (row["mac"], row["model"], row["ip"], row["dns"], row["gateway"]) == (
      "52:54:00:00:00:02", "e1000", "10.0.2.20", "1.1.1.1", None,
    )

  def test_create_form_prefills_random_mac(self, module, make_ctx, machines):
    out = module.manage(make_ctx(), ["create"])
    assert re.search(r'name="mac" value="52:54:00(:[0-9a-f]{2}){3}"', out)
    assert '<option value="virtio-net-pci" selected>' in out

  @pytest.mark.parametrize("overrides,message", [
    ({"machine": "vm1"}, "machine: Machine already has a network interface"),
    ({"machine": "ghost"}, "machine: Machine does not exist"),
    ({"mac": "52:54:00:00:00:01"}, "mac: MAC address already in use"),
    ({"mac": "zz:54:00:00:00:01"}, "mac: Invalid MAC address format"),
    ({"model": "tulip-9000"}, "model: Unknown network adapter"),
    ({"ip": "10.0.2.300"}, "ip: Invalid IP address"),
    ({"gateway": "gw"}, "gateway: Invalid IP address"),
  ])
  def test_create_validation(self, module, make_ctx, store, machines, overrides, message):
    out = module.manage(make_ctx(method="POST", form=nic_form(**overrides)), ["create"])
    assert message in out
    assert store.count("network_interface") == 1

  @pytest.mark.parametrize("overrides,message", [
    ({"machine": "vm1", "mac": "52:54:00:00:00:09"}, "machine: Machine already has a network interface"),
    ({"machine": "vm2", "mac": "52:54:00:00:00:01"}, "mac: MAC address already in use"),
  ])
  def test_storage_rejection_names_the_colliding_field(self, module, make_ctx, store, machines, monkeypatch,
                                                       overrides, message):
    monkeypatch.setattr(Validator, "unique", lambda self, *args, **kwargs: self)
    out = module.manage(make_ctx(method="POST", form=nic_form(**overrides)), ["create"])
    assert message in out
    assert store.count("network_interface") == 1

  def test_edit_storage_rejection_names_mac(self, module, make_ctx, store, machines, monkeypatch):
    store.insert("network_interface", {"machine_name": "vm2", "mac": "52:54:00:00:00:02"})
    monkeypatch.setattr(Validator, "unique", lambda self, *args, **kwargs: self)
    form = nic_form(machine="vm1", mac="52:54:00:00:00:02")
    out = module.manage(make_ctx(method="POST", form=form), ["edit", "vm1"])
    assert "mac: MAC address already in use" in out
    assert "Machine already has" not in out

  def test_edit_keeps_own_mac(self, module, make_ctx, store, machines):
    form = nic_form(machine="vm1", mac="52:54:00:00:00:01", ip="10.0.2.15")
    out = module.manage(make_ctx(method="POST", form=form), ["edit", "vm1"])
    assert "Network interface updated" in out
    assert store.first("network_interface", {"machine_name": "vm1"})["ip"] == "10.0.2.15"

  def test_edit_rejects_mac_of_other_machine(self, module, make_ctx, store, machines):
    store.insert("network_interface", {"machine_name": "vm2", "mac": "52:54:00:00:00:02"})
    form = nic_form(machine="vm1", mac="52:54:00:00:00:02")
    out = module.manage(make_ctx(method="POST", form=form), ["edit", "vm1"])
    assert "mac: MAC address already in use" in out
    assert store.first("network_interface", {"machine_name": "vm1"})["mac"] == "52:54:00:00:00:01"

  def test_edit_form_is_prefilled(self, module, make_ctx, machines):
    out = module.manage(make_ctx(), ["edit", "vm1"])
    assert 'value="52:54:00:00:00:01"' in out
    assert "readonly" in out

  def test_edit_unknown_interface(self, module, make_ctx, machines):
    out = module.manage(make_ctx(), ["edit", "vm2"])
    assert "Network interface &#39;vm2&#39; does not exist" in out

  def test_delete(self, module, make_ctx, store, machines):
    out = module.manage(make_ctx(), ["delete", "vm1"])
    assert "Network interface deleted" in out
    assert store.count("network_interface") == 0

  def test_list_and_state(self, module, make_ctx, machines):
    out = module.manage(make_ctx(), [])
    assert "52:54:00:00:00:01" in out
    assert "Network interfaces: 1, Port forwarding rules: 0" in out


class TestPortForwarding:
  def test_add_rule(self, module, make_ctx, store, machines):
    out = module.manage(make_ctx(method="POST", form=forward_form()), ["portforward"])
    rule = store.first("port_forwarding", {"machine_name": "vm1"})
    assert (rule["protocol"], rule["host_port"], rule["guest_port"], rule["guest_ip"]) == ("tcp", 8080, 80, None)
    assert 'href="?q=network/manage/delete_forward/vm1/tcp/8080"' in out

  @pytest.mark.parametrize("overrides,message", [
    ({"machine": "ghost"}, "machine: Machine does not exist"),
    ({"protocol": "icmp"}, "protocol: Must be one of: tcp, udp"),
    ({"host_port": "0"}, "host_port: Must be between 1 and 65535"),
    ({"guest_port": "http"}, "guest_port: Must be an integer"),
    ({"guest_ip": "nope"}, "guest_ip: Invalid IP address"),
  ])
  def test_rule_validation(self, module, make_ctx, store, machines, overrides, message):
    out = module.manage(make_ctx(method="POST", form=forward_form(**overrides)), ["portforward"])
    assert message in out
    assert store.count("port_forwarding") == 0

  def test_duplicate_rule(self, module, make_ctx, store, machines):
    module.manage(make_ctx(method="POST", form=forward_form()), ["portforward"])
    out = module.manage(make_ctx(method="POST", form=forward_form(guest_port="81")), ["portforward"])
    assert "host_port: A rule for this protocol and host port already exists" in out
    assert store.count("port_forwarding") == 1

  def test_delete_one_rule(self, module, make_ctx, store, machines):
    store.insert("port_forwarding", {"machine_name": "vm1", "protocol": "tcp", "host_port": 2222, "guest_port": 22})
    store.insert("port_forwarding", {"machine_name": "vm1", "protocol": "udp", "host_port": 2222, "guest_port": 22})
    out = module.manage(make_ctx(), ["delete_forward", "vm1", "tcp", "2222"])
    assert "1 rule(s) deleted for vm1" in out
    assert [r["protocol"] for r in store.select("port_forwarding")] == ["udp"]

  def test_delete_all_rules_of_machine(self, module, make_ctx, store, machines):
    store.insert("port_forwarding", {"machine_name": "vm1", "protocol": "tcp", "host_port": 2222, "guest_port": 22})
    store.insert("port_forwarding", {"machine_name": "vm1", "protocol": "udp", "host_port": 2222, "guest_port": 22})
    store.insert("port_forwarding", {"machine_name": "vm2", "protocol": "tcp", "host_port": 2223, "guest_port": 22})
    out = module.manage(make_ctx(), ["delete_forward", "vm1"])
    assert "2 rule(s) deleted for vm1" in out
    assert store.count("port_forwarding") == 1

  def test_delete_with_protocol_but_no_port_is_rejected(self, module, make_ctx, store, machines):
    store.insert("port_forwarding", {"machine_name": "vm1", "protocol": "tcp", "host_port": 2222, "guest_port": 22})
    store.insert("port_forwarding", {"machine_name": "vm1", "protocol": "udp", "host_port": 2222, "guest_port": 22})
    out = module.manage(make_ctx(), ["delete_forward", "vm1", "tcp"])
    assert "host_port: A protocol needs a host port" in out
    assert store.count("port_forwarding") == 2

  def test_delete_missing_rule(self, module, make_ctx, machines):
    out = module.manage(make_ctx(), ["delete_forward", "vm1", "tcp", "9999"])
    assert "does not exist" in out

  def test_delete_rule_with_bad_port(self, module, make_ctx, machines):
    out = module.manage(make_ctx(), ["delete_forward", "vm1", "tcp", "abc"])
    assert "host_port: Must be an integer" in out
