"""
Virtual machines.

A machine is a stored row (name, platform, disks, memory, CPUs). Starting it
builds a ``qemu-system-<platform>`` command line from that row, the images
root and the machine's network settings; stopping it matches the process by
its ``-name`` argument.
"""
import logging
from typing import Any, Dict, List

from qemu_manager import hardware, views
from qemu_manager.dispatcher import ModuleDispatcher
from qemu_manager.errors import ExternalProcessError, NotFoundError, StorageConstraintError, ValidationError
from qemu_manager.modules.images import list_cdroms, list_images
from qemu_manager.modules.network import FORWARDS, INTERFACES, network_args, random_mac
from qemu_manager.process import PKILL, resolve_in_root
from qemu_manager.validator import Validator

logger = logging.getLogger(__name__)

TABLE = "virtual_machine"
DUPLICATE_NAME = "Virtual machine with this name already exists"
# pkill exits 1 when no process matched the pattern
PKILL_NO_MATCH = 1


TPL_LIST = """
<h3>Virtual machines</h3>
{% if machines %}
<table>
  <thead><tr><th>Name</th><th>Platform</th><th>CPU</th><th>Memory</th><th>Disk</th><th>Network</th><th></th></tr></thead>
  <tbody>
  {% for m in machines %}
    <tr>
      <td>{{ m.name }}</td>
      <td>{{ m.platform }}</td>
      <td>{{ m.cpu }}</td>
      <td>{{ m.memory }} MB</td>
      <td>{{ m.hda or '-' }}{% if m.cdrom %} + {{ m.cdrom }}{% endif %}</td>
      <td>{% if m.nic %}<code>{{ m.nic.mac }}</code> {{ m.nic.ip or 'DHCP' }}{% else %}-{% endif %}</td>
      <td>
        <a href="{{ m.start }}">start</a>
        <a href="{{ m.stop }}">stop</a>
        <a href="{{ m.delete }}" onclick="return confirm('Delete {{ m.name }}?');">delete</a>
      </td>
    </tr>
  {% endfor %}
  </tbody>
</table>
{% else %}
<p class="muted">No virtual machines defined.</p>
{% endif %}
"""

TPL_CREATE = """
{{ errors }}
<h3>Create virtual machine</h3>
{% if not images %}
<p class="muted">No disk images found. Create one first.</p>
{% endif %}
<form method="post" action="{{ action }}">
  <label>Name</label>
  <input name="name" value="{{ form.get('name', '') }}" required />
  <label>CPUs</label>
  <input name="cpu" value="{{ form.get('cpu', '1') }}" required />
  <label>Memory (MB)</label>
  <input name="ram" value="{{ form.get('ram', '1024') }}" required />
  <label>Platform</label>
  <select name="platform">
  {% for value, label, selected in platforms %}
    <option value="{{ value }}"{% if selected %} selected{% endif %}>{{ label }}</option>
  {% endfor %}
  </select>
  <label>Disk image</label>
  <select name="image">
  {% for value, label, selected in images %}
    <option value="{{ value }}"{% if selected %} selected{% endif %}>{{ label }}</option>
  {% endfor %}
  </select>
  <label>CD image (optional)</label>
  <select name="cdrom">
    <option value="">none</option>
  {% for value, label, selected in cdroms %}
    <option value="{{ value }}"{% if selected %} selected{% endif %}>{{ label }}</option>
  {% endfor %}
  </select>
  <button type="submit">Create</button>
</form>
"""


class MachineModule(ModuleDispatcher):
  name = "machine"
  label = "Virtual Machines"
  menu_items = (("list", "List machines"), ("create", "Create machine"))

  def verb_table(self):
    return {
      "list": self.list,
      "create": self.create,
      "start": self.start,
      "stop": self.stop,
      "delete": self.delete,
    }

  @property
  def root(self):
    return self.services.config.images_dir

  def state(self, ctx) -> str:
    return f"Virtual machines: {ctx.store.count(TABLE)}"

  def list(self, ctx, args):
    machines = []
    for row in ctx.store.select(TABLE):
      row["nic"] = ctx.store.first(INTERFACES, {"machine_name": row["name"]})
      row["start"] = self.link("start", row["name"])
      row["stop"] = self.link("stop", row["name"])
      row["delete"] = self.link("delete", row["name"])
      machines.append(row)
    return views.render_source(TPL_LIST, machines=machines)

  def _form(self, ctx, form, errors=None):
    images = list_images(self.root)
    return views.render_source(
      TPL_CREATE,
      errors=views.validation_block(errors) if errors else "",
      action=self.link("create"),
      form=form,
      platforms=views.options(hardware.values(hardware.Architecture), form.get("platform") or ctx.config.platform),
      images=views.options(images, form.get("image")),
      cdroms=views.options(list_cdroms(self.root), form.get("cdrom")),
    )

  def create(self, ctx, args):
    if not ctx.submitted:
      return self._form(ctx, {})

    v = Validator.from_form(ctx.form, store=ctx.store)
    v.required("name", "Machine name is required") \
      .machine_name("name") \
      .unique("name", TABLE, "name", DUPLICATE_NAME)
    v.required("cpu", "CPU count is required").integer("cpu").range("cpu", 1, 32)
    v.required("ram", "Memory is required").integer("ram").range("ram", 128, 32768)
    v.one_of("platform", hardware.values(hardware.Architecture), "Unknown platform")
    v.required("image", "Disk image is required").one_of("image", list_images(self.root), "Unknown disk image")
    if v.get("cdrom"):
      v.one_of("cdrom", list_cdroms(self.root), "Unknown CD image")
    if v.has_errors():
      logger.warning(f"[{ctx.request_id}] machine.create rejected: {v.errors()}")
      return self._form(ctx, v.data(), v.errors())

    row = {
      "name": v.get("name"),
      "platform": v.get("platform") or ctx.config.platform,
      "hda": v.get("image"),
      "cdrom": v.get("cdrom") or None,
      "memory": int(v.get("ram")),
      "cpu": int(v.get("cpu")),
      "boot": "d" if v.get("cdrom") else "c",
    }
    try:
      ctx.store.insert(TABLE, row)
    except StorageConstraintError:
      return self._form(ctx, v.data(), [f"name: {DUPLICATE_NAME}"])
    logger.info(f"[{ctx.request_id}] machine.create name={row['name']} platform={row['platform']}")

    mac = random_mac()
    try:
      ctx.store.insert(INTERFACES, {"machine_name": row["name"], "mac": mac, "model": hardware.DEFAULT_ADAPTER.value})
    except StorageConstraintError as exc:
      logger.warning(f"[{ctx.request_id}] machine.create {row['name']}: default network interface not created: {exc}")
      mac = None

    details = [
      ("Platform", row["platform"]),
      ("CPUs", str(row["cpu"])),
      ("Memory", f"{row['memory']} MB"),
      ("Disk", row["hda"]),
    ]
    if row["cdrom"]:
      details.append(("CD image", row["cdrom"]))
    if mac:
      details.append(("MAC", mac))
    return views.success_block(
      "Virtual machine created",
      f"{row['name']} has been defined.",
      details=details,
      links=[(self.link("start", row["name"]), "Start"), (self.link("list"), "Back to machines")],
    )

  def _machine(self, ctx, args) -> Dict[str, Any]:
    if not args:
      raise ValidationError("name: No machine specified")
    v = Validator({"name": args[0]})
    v.machine_name("name")
    v.raise_for_errors()
    row = ctx.store.first(TABLE, {"name": args[0]})
    if row is None:
      raise NotFoundError("Virtual machine", args[0])
    return row

  def _disk(self, name: str, kind: str) -> str:
    path = resolve_in_root(self.root, name)
    if not path.is_file():
      raise NotFoundError(kind, name)
    return str(path)

  def command(self, ctx, vm: Dict[str, Any]) -> List[str]:
    argv = [
      hardware.system_program(vm["platform"]),
      "-name", vm["name"],
      "-m", str(vm["memory"]),
      "-smp", str(vm["cpu"]),
    ]
    if ctx.config.accelerator:
      argv += ["-accel", ctx.config.accelerator]
    if vm["hda"]:
      argv += ["-hda", self._disk(vm["hda"], "Disk image")]
    if vm["cdrom"]:
      argv += ["-cdrom", self._disk(vm["cdrom"], "CD image")]
    argv += network_args(ctx.store, vm["name"])
    argv += ["-boot", vm["boot"] or "c", "-daemonize"]
    return argv

  def start(self, ctx, args):
    vm = self._machine(ctx, args)
    result = ctx.run(self.command(ctx, vm))
    if result.failed:
      raise ExternalProcessError(result, f"Failed to start {vm['name']}")
    logger.info(f"[{ctx.request_id}] machine.start name={vm['name']}")
    return views.success_block(
      "Virtual machine started",
      f"{vm['name']} is running in the background.",
      details=[("Command", result.command_line)],
      links=[(self.link("stop", vm["name"]), "Stop"), (self.link("list"), "Back to machines")],
    )

  def stop(self, ctx, args):
    vm = self._machine(ctx, args)
    pattern = f"qemu-system-.* -name {vm['name']}( |$)"
    result = ctx.run([PKILL, "-f", pattern])
    if result.exit_code == PKILL_NO_MATCH:
      return views.error_block(f"{vm['name']} is not running")
    if result.failed:
      raise ExternalProcessError(result, f"Failed to stop {vm['name']}")
    logger.info(f"[{ctx.request_id}] machine.stop name={vm['name']}")
    return views.success_block(
      "Virtual machine stopped",
      f"{vm['name']} has been signalled to stop.",
      links=[(self.link("list"), "Back to machines")],
    )

  def delete(self, ctx, args):
    vm = self._machine(ctx, args)
    name = vm["name"]
    ctx.store.delete(TABLE, {"name": name})
    ctx.store.delete(INTERFACES, {"machine_name": name})
    ctx.store.delete(FORWARDS, {"machine_name": name})
    logger.info(f"[{ctx.request_id}] machine.delete name={name}")
    return views.success_block(
      "Virtual machine deleted",
      f"{name} and its network settings have been removed.",
      links=[(self.link("list"), "Back to machines")],
    )
