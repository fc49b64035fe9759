"""
Disk images.

Images are plain ``*.img`` files directly under the images root, created and
inspected with ``qemu-img``. Names coming from the request are validated and
then confined to the root before they reach a command line.
"""
import logging
from pathlib import Path
from typing import List

from qemu_manager import views
from qemu_manager.dispatcher import ModuleDispatcher
from qemu_manager.errors import ExternalProcessError, NotFoundError, ValidationError
from qemu_manager.process import ERROR_MARKER, QEMU_IMG, resolve_in_root
from qemu_manager.validator import Validator

logger = logging.getLogger(__name__)

IMAGE_SUFFIX = ".img"
CDROM_SUFFIX = ".iso"
FORMATS = ["qcow2", "raw", "vmdk", "vdi", "vhdx"]
MAX_SIZE_MB = 1048576


def list_files(root, suffix: str) -> List[str]:
  root = Path(root)
  if not root.is_dir():
    return []
  return sorted(p.name for p in root.iterdir() if p.is_file() and p.name.endswith(suffix))


def list_images(root) -> List[str]:
  return list_files(root, IMAGE_SUFFIX)


def list_cdroms(root) -> List[str]:
  return list_files(root, CDROM_SUFFIX)


TPL_LIST = """
<h3>Disk images</h3>
{% if images %}
<table>
  <thead><tr><th>Name</th><th>Size</th><th></th></tr></thead>
  <tbody>
  {% for img in images %}
    <tr>
      <td>{{ img.name }}</td>
      <td>{{ img.size }}</td>
      <td><a href="{{ img.info }}">info</a> <a href="{{ img.check }}">check</a></td>
    </tr>
  {% endfor %}
  </tbody>
</table>
{% else %}
<p class="muted">No disk images in {{ root }}.</p>
{% endif %}
"""

TPL_CREATE = """
{{ errors }}
<h3>Create disk image</h3>
<form method="post" action="{{ action }}">
  <label>Name</label>
  <input name="image-name" value="{{ form.get('image-name', '') }}" placeholder="debian12" required />
  <label>Size (MB)</label>
  <input name="image-size" value="{{ form.get('image-size', '10240') }}" required />
  <label>Format</label>
  <select name="image-format">
  {% for value, label, selected in formats %}
    <option value="{{ value }}"{% if selected %} selected{% endif %}>{{ label }}</option>
  {% endfor %}
  </select>
  <button type="submit">Create</button>
</form>
"""


class ImageModule(ModuleDispatcher):
  name = "image"
  label = "Disk Images"
  menu_items = (("list", "List images"), ("create", "Create image"))

  def verb_table(self):
    return {
      "list": self.list,
      "create": self.create,
      "info": self.info,
      "check": self.check,
    }

  @property
  def root(self) -> Path:
    return self.services.config.images_dir

  def state(self, ctx) -> str:
    result = ctx.run([QEMU_IMG, "--version"])
    return result.output[0] if result.output else f"{ERROR_MARKER} no version reported"

  def list(self, ctx, args):
    images = []
    for name in list_images(self.root):
      images.append({
        "name": name,
        "size": views.human_bytes((self.root / name).stat().st_size),
        "info": self.link("info", name),
        "check": self.link("check", name),
      })
    return views.render_source(TPL_LIST, images=images, root=str(self.root))

  def _form(self, ctx, errors=None):
    return views.render_source(
      TPL_CREATE,
      errors=views.validation_block(errors) if errors else "",
      action=self.link("create"),
      form=ctx.form,
      formats=views.options(FORMATS, ctx.form.get("image-format", FORMATS[0])),
    )

  def create(self, ctx, args):
    if not ctx.submitted:
      return self._form(ctx)

    v = Validator.from_form(ctx.form)
    v.required("image-name", "Image name is required") \
      .machine_name("image-name", "Use only letters, numbers, hyphens and underscores") \
      .filename("image-name") \
      .safe_path("image-name") \
      .custom("image-name", lambda n: not (self.root / f"{n}{IMAGE_SUFFIX}").exists(), "Image already exists")
    v.required("image-size", "Image size is required") \
      .integer("image-size") \
      .range("image-size", 1, MAX_SIZE_MB)
    v.required("image-format", "Image format is required") \
      .one_of("image-format", FORMATS)
    if v.has_errors():
      logger.warning(f"[{ctx.request_id}] image.create rejected: {v.errors()}")
      return self._form(ctx, v.errors())

    name = v.get("image-name")
    size = int(v.get("image-size"))
    fmt = v.get("image-format")
    filename = f"{name}{IMAGE_SUFFIX}"
    self.root.mkdir(parents=True, exist_ok=True)
    path = resolve_in_root(self.root, filename)

    result = ctx.run([QEMU_IMG, "create", "-f", fmt, str(path), f"{size}M"])
    if result.failed:
      raise ExternalProcessError(result, "Failed to create disk image")
    if not path.exists():
      raise ExternalProcessError(result, f"qemu-img reported success but {filename} is missing")

    logger.info(f"[{ctx.request_id}] image.create {filename} format={fmt} size={size}M")
    return views.success_block(
      "Disk image created",
      f"{filename} is ready.",
      details=[
        ("Format", fmt),
        ("Size", f"{size} MB"),
        ("File size", views.human_bytes(path.stat().st_size)),
        ("Location", str(path)),
      ],
      links=[(self.link("list"), "Back to images"), (self.link("info", filename), "Image info")],
    )

  def _existing(self, args) -> Path:
    if not args:
      raise ValidationError("image: No image specified")
    filename = args[0]
    v = Validator({"image": filename})
    v.filename("image").safe_path("image")
    v.raise_for_errors()
    path = resolve_in_root(self.root, filename)
    if not path.is_file():
      raise NotFoundError("Image", filename)
    return path

  def info(self, ctx, args):
    path = self._existing(args)
    result = ctx.run([QEMU_IMG, "info", str(path)])
    if result.failed:
      raise ExternalProcessError(result, f"qemu-img info failed for {path.name}")
    return views.output_block(f"Image info: {path.name}", result.output)

  def check(self, ctx, args):
    # qemu-img check exits non-zero when it finds problems; the report is still the answer.
    path = self._existing(args)
    result = ctx.run([QEMU_IMG, "check", str(path)])
    return views.output_block(f"Image check: {path.name}", result.output)
