"""
Network interfaces and port forwarding.

Every machine has at most one interface (user-mode networking, ``net0``) and
any number of host port forwards. ``network_args`` turns both into the QEMU
arguments used when a machine starts.
"""
import logging
import random
from typing import Any, Dict, List

from qemu_manager import hardware, views
from qemu_manager.dispatcher import ModuleDispatcher
from qemu_manager.errors import NotFoundError, StorageConstraintError, ValidationError
from qemu_manager.validator import Validator

logger = logging.getLogger(__name__)

INTERFACES = "network_interface"
FORWARDS = "port_forwarding"
MACHINES = "virtual_machine"
MAC_PREFIX = "52:54:00"
PROTOCOLS = ["tcp", "udp"]


def random_mac() -> str:
  """A MAC in the QEMU/KVM locally administered range."""
  return MAC_PREFIX + "".join(f":{random.randint(0, 255):02x}" for _ in range(3))


def network_args(store, machine_name: str) -> List[str]:
  netdev = "user,id=net0"
  for rule in store.select(FORWARDS, where={"machine_name": machine_name}):
    netdev += f",hostfwd={rule['protocol']}::{rule['host_port']}-{rule['guest_ip'] or ''}:{rule['guest_port']}"

  iface = store.first(INTERFACES, {"machine_name": machine_name})
  if iface is None:
    device = f"{hardware.DEFAULT_ADAPTER.value},netdev=net0"
  else:
    device = f"{iface['model'] or hardware.DEFAULT_ADAPTER.value},netdev=net0"
    if iface["mac"]:
      device += f",mac={iface['mac']}"
  return ["-netdev", netdev, "-device", device]


TPL_LIST = """
<h3>Network interfaces</h3>
{% if interfaces %}
<table>
  <thead><tr><th>Machine</th><th>Model</th><th>MAC</th><th>IP</th><th>Netmask</th><th>Gateway</th><th>DNS</th><th></th></tr></thead>
  <tbody>
  {% for i in interfaces %}
    <tr>
      <td>{{ i.machine_name }}</td>
      <td>{{ i.model }}</td>
      <td><code>{{ i.mac }}</code></td>
      <td>{{ i.ip or 'DHCP' }}</td>
      <td>{{ i.netmask or '' }}</td>
      <td>{{ i.gateway or '' }}</td>
      <td>{{ i.dns or '' }}</td>
      <td><a href="{{ i.edit }}">edit</a> <a href="{{ i.delete }}">delete</a></td>
    </tr>
  {% endfor %}
  </tbody>
</table>
{% else %}
<p class="muted">No network interfaces configured.</p>
{% endif %}
"""

TPL_FORM = """
{{ errors }}
<h3>{{ title }}</h3>
<form method="post" action="{{ action }}">
  <label>Machine</label>
  {% if editing %}
  <input name="machine" value="{{ form.get('machine', '') }}" readonly />
  {% else %}
  <select name="machine">
  {% for value, label, selected in machines %}
    <option value="{{ value }}"{% if selected %} selected{% endif %}>{{ label }}</option>
  {% endfor %}
  </select>
  {% endif %}
  <label>Adapter model</label>
  <select name="model">
  {% for value, label, selected in models %}
    <option value="{{ value }}"{% if selected %} selected{% endif %}>{{ label }}</option>
  {% endfor %}
  </select>
  <label>MAC address</label>
  <input name="mac" value="{{ form.get('mac', '') }}" required />
  <label>IP address (empty for DHCP)</label>
  <input name="ip" value="{{ form.get('ip', '') }}" />
  <label>Netmask</label>
  <input name="netmask" value="{{ form.get('netmask', '') }}" />
  <label>Gateway</label>
  <input name="gateway" value="{{ form.get('gateway', '') }}" />
  <label>DNS</label>
  <input name="dns" value="{{ form.get('dns', '') }}" />
  <button type="submit">Save</button>
</form>
"""

TPL_FORWARDS = """
{{ errors }}
<h3>Port forwarding</h3>
{% if rules %}
<table>
  <thead><tr><th>Machine</th><th>Protocol</th><th>Host port</th><th>Guest</th><th></th></tr></thead>
  <tbody>
  {% for r in rules %}
    <tr>
      <td>{{ r.machine_name }}</td>
      <td>{{ r.protocol }}</td>
      <td>{{ r.host_port }}</td>
      <td>{{ r.guest_ip or '*' }}:{{ r.guest_port }}</td>
      <td><a href="{{ r.delete }}">delete</a></td>
    </tr>
  {% endfor %}
  </tbody>
</table>
{% else %}
<p class="muted">No port forwarding rules.</p>
{% endif %}
<h4>Add rule</h4>
<form method="post" action="{{ action }}">
  <label>Machine</label>
  <select name="machine">
  {% for value, label, selected in machines %}
    <option value="{{ value }}"{% if selected %} selected{% endif %}>{{ label }}</option>
  {% endfor %}
  </select>
  <label>Protocol</label>
  <select name="protocol">
  {% for value, label, selected in protocols %}
    <option value="{{ value }}"{% if selected %} selected{% endif %}>{{ label }}</option>
  {% endfor %}
  </select>
  <label>Host port</label>
  <input name="host_port" value="{{ form.get('host_port', '') }}" required />
  <label>Guest port</label>
  <input name="guest_port" value="{{ form.get('guest_port', '') }}" required />
  <label>Guest IP (optional)</label>
  <input name="guest_ip" value="{{ form.get('guest_ip', '') }}" />
  <button type="submit">Add</button>
</form>
"""


class NetworkModule(ModuleDispatcher):
  name = "network"
  label = "Network"
  menu_items = (
    ("list", "List interfaces"),
    ("create", "Add interface"),
    ("portforward", "Port forwarding"),
  )

  def verb_table(self):
    return {
      "list": self.list,
      "create": self.create,
      "edit": self.edit,
      "delete": self.delete,
      "portforward": self.portforward,
      "delete_forward": self.delete_forward,
    }

  def state(self, ctx) -> str:
    return f"Network interfaces: {ctx.store.count(INTERFACES)}, Port forwarding rules: {ctx.store.count(FORWARDS)}"

  def _machine_names(self, ctx) -> List[str]:
    return [row["name"] for row in ctx.store.select(MACHINES, columns=["id", "name"])]

  def list(self, ctx, args):
    interfaces = []
    for row in ctx.store.select(INTERFACES):
      row["edit"] = self.link("edit", row["machine_name"])
      row["delete"] = self.link("delete", row["machine_name"])
      interfaces.append(row)
    return views.render_source(TPL_LIST, interfaces=interfaces)

  def _form(self, ctx, form, errors=None, editing=None):
    return views.render_source(
      TPL_FORM,
      errors=views.validation_block(errors) if errors else "",
      title=f"Edit interface of {editing}" if editing else "Add network interface",
      action=self.link("edit", editing) if editing else self.link("create"),
      editing=editing,
      form=form,
      machines=views.options(self._machine_names(ctx), form.get("machine")),
      models=views.options(hardware.values(hardware.NetworkAdapter),
                           form.get("model") or hardware.DEFAULT_ADAPTER.value),
    )

  def _validate(self, ctx, editing=None) -> Validator:
    v = Validator.from_form(ctx.form, store=ctx.store)
    v.required("machine", "Machine is required") \
      .machine_name("machine") \
      .exists("machine", MACHINES, "name", "Machine does not exist")
    if editing is None:
      v.unique("machine", INTERFACES, "machine_name", "Machine already has a network interface")
    elif v.get("machine") != editing:
      v.custom("machine", lambda m: False, "Machine cannot be changed")
    exclude = {"machine_name": editing} if editing else None
    v.required("mac", "MAC address is required") \
      .mac("mac") \
      .unique("mac", INTERFACES, "mac", "MAC address already in use", exclude=exclude)
    v.one_of("model", hardware.values(hardware.NetworkAdapter), "Unknown network adapter")
    for field in ("ip", "netmask", "gateway", "dns"):
      v.ip(field)
    return v

  def _collisions(self, ctx, row, exc, editing=None) -> List[str]:
    """Name the unique rule a rejected write collided with, or re-raise when none matches."""
    if editing is None and ctx.store.exists(INTERFACES, {"machine_name": row["machine_name"]}):
      return ["machine: Machine already has a network interface"]
    exclude = {"machine_name": editing} if editing else None
    if ctx.store.exists(INTERFACES, {"mac": row["mac"]}, exclude=exclude):
      return ["mac: MAC address already in use"]
    raise exc

  def _row(self, v: Validator) -> Dict[str, Any]:
    return {
      "machine_name": v.get("machine"),
      "mac": v.get("mac"),
      "model": v.get("model") or hardware.DEFAULT_ADAPTER.value,
      "ip": v.get("ip") or None,
      "netmask": v.get("netmask") or None,
      "gateway": v.get("gateway") or None,
      "dns": v.get("dns") or None,
    }

  def create(self, ctx, args):
    if not ctx.submitted:
      return self._form(ctx, {"mac": random_mac(), "model": hardware.DEFAULT_ADAPTER.value})

    v = self._validate(ctx)
    if v.has_errors():
      logger.warning(f"[{ctx.request_id}] network.create rejected: {v.errors()}")
      return self._form(ctx, v.data(), v.errors())

    row = self._row(v)
    try:
      ctx.store.insert(INTERFACES, row)
    except StorageConstraintError as exc:
      return self._form(ctx, v.data(), self._collisions(ctx, row, exc))
    logger.info(f"[{ctx.request_id}] network.create machine={row['machine_name']} mac={row['mac']}")
    return views.success_block(
      "Network interface created",
      f"Interface added to {row['machine_name']}.",
      details=[("Model", row["model"]), ("MAC", row["mac"]), ("IP", row["ip"] or "DHCP")],
      links=[(self.link("list"), "Back to interfaces")],
    )

  def _interface(self, ctx, args) -> Dict[str, Any]:
    if not args:
      raise ValidationError("machine: No machine specified")
    v = Validator({"machine": args[0]})
    v.machine_name("machine")
    v.raise_for_errors()
    iface = ctx.store.first(INTERFACES, {"machine_name": args[0]})
    if iface is None:
      raise NotFoundError("Network interface", args[0])
    return iface

  def edit(self, ctx, args):
    iface = self._interface(ctx, args)
    machine = iface["machine_name"]
    if not ctx.submitted:
      form = {k: iface[k] or "" for k in ("mac", "model", "ip", "netmask", "gateway", "dns")}
      form["machine"] = machine
      return self._form(ctx, form, editing=machine)

    v = self._validate(ctx, editing=machine)
    if v.has_errors():
      logger.warning(f"[{ctx.request_id}] network.edit rejected: {v.errors()}")
      return self._form(ctx, v.data(), v.errors(), editing=machine)

    row = self._row(v)
    try:
      ctx.store.update(INTERFACES, row, {"machine_name": machine})
    except StorageConstraintError as exc:
      return self._form(ctx, v.data(), self._collisions(ctx, row, exc, editing=machine), editing=machine)
    logger.info(f"[{ctx.request_id}] network.edit machine={machine} mac={row['mac']}")
    return views.success_block(
      "Network interface updated",
      f"Interface of {machine} saved.",
      details=[("Model", row["model"]), ("MAC", row["mac"]), ("IP", row["ip"] or "DHCP")],
      links=[(self.link("list"), "Back to interfaces")],
    )

  def delete(self, ctx, args):
    iface = self._interface(ctx, args)
    ctx.store.delete(INTERFACES, {"machine_name": iface["machine_name"]})
    logger.info(f"[{ctx.request_id}] network.delete machine={iface['machine_name']}")
    return views.success_block(
      "Network interface deleted",
      f"Interface of {iface['machine_name']} removed.",
      links=[(self.link("list"), "Back to interfaces")],
    )

  def _forwards_page(self, ctx, form, errors=None):
    rules = []
    for row in ctx.store.select(FORWARDS):
      row["delete"] = self.link("delete_forward", row["machine_name"], row["protocol"], str(row["host_port"]))
      rules.append(row)
    return views.render_source(
      TPL_FORWARDS,
      errors=views.validation_block(errors) if errors else "",
      rules=rules,
      action=self.link("portforward"),
      form=form,
      machines=views.options(self._machine_names(ctx), form.get("machine")),
      protocols=views.options(PROTOCOLS, form.get("protocol") or PROTOCOLS[0]),
    )

  def portforward(self, ctx, args):
    if not ctx.submitted:
      return self._forwards_page(ctx, {})

    v = Validator.from_form(ctx.form, store=ctx.store)
    v.required("machine", "Machine is required") \
      .machine_name("machine") \
      .exists("machine", MACHINES, "name", "Machine does not exist")
    v.required("protocol", "Protocol is required").one_of("protocol", PROTOCOLS)
    v.required("host_port", "Host port is required").integer("host_port").range("host_port", 1, 65535)
    v.required("guest_port", "Guest port is required").integer("guest_port").range("guest_port", 1, 65535)
    v.ip("guest_ip")
    if v.is_valid() and ctx.store.exists(FORWARDS, {
      "machine_name": v.get("machine"),
      "protocol": v.get("protocol"),
      "host_port": int(v.get("host_port")),
    }):
      v.custom("host_port", lambda _: False, "A rule for this protocol and host port already exists")
    if v.has_errors():
      logger.warning(f"[{ctx.request_id}] network.portforward rejected: {v.errors()}")
      return self._forwards_page(ctx, v.data(), v.errors())

    row = {
      "machine_name": v.get("machine"),
      "protocol": v.get("protocol"),
      "host_port": int(v.get("host_port")),
      "guest_port": int(v.get("guest_port")),
      "guest_ip": v.get("guest_ip") or None,
    }
    try:
      ctx.store.insert(FORWARDS, row)
    except StorageConstraintError:
      return self._forwards_page(ctx, v.data(), ["host_port: A rule for this protocol and host port already exists"])
    logger.info(
      f"[{ctx.request_id}] network.portforward machine={row['machine_name']} "
      f"{row['protocol']} {row['host_port']}->{row['guest_port']}"
    )
    return self._forwards_page(ctx, {})

  def delete_forward(self, ctx, args):
    if not args:
      raise ValidationError("machine: No machine specified")
    if len(args) == 2:
      raise ValidationError("host_port: A protocol needs a host port")
    where: Dict[str, Any] = {"machine_name": args[0]}
    if len(args) >= 3:
      v = Validator({"machine": args[0], "protocol": args[1], "host_port": args[2]})
      v.one_of("protocol", PROTOCOLS).integer("host_port").range("host_port", 1, 65535)
    else:
      v = Validator({"machine": args[0]})
    v.machine_name("machine")
    v.raise_for_errors()
    if len(args) >= 3:
      where["protocol"] = args[1]
      where["host_port"] = int(args[2])

    removed = ctx.store.delete(FORWARDS, where)
    if not removed:
      raise NotFoundError("Port forwarding rule", "/".join(args[:3]))
    logger.info(f"[{ctx.request_id}] network.delete_forward {where} removed={removed}")
    return views.success_block(
      "Port forwarding removed",
      f"{removed} rule(s) deleted for {args[0]}.",
      links=[(self.link("portforward"), "Back to port forwarding")],
    )
