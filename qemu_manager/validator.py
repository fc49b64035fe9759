"""
Chainable field validator.

A Validator is built from one bag of submitted values. Each rule appends
``"<field>: <message>"`` to an ordered error list on failure and never raises;
errors accumulate across fields instead of stopping at the first one. Rules
other than ``required`` only run when the field is present.

Rules that consult outside state (``unique``, ``exists``, ``custom``) should be
chained after the cheap syntactic ones: they are skipped once the field
already has an error.
"""
import ipaddress
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from qemu_manager.errors import ValidationError

FILENAME_FORBIDDEN = re.compile(r'[<>:"|?*\\/]')
RESERVED_NAMES = frozenset(
  ["CON", "PRN", "AUX", "NUL"]
  + [f"COM{i}" for i in range(1, 10)]
  + [f"LPT{i}" for i in range(1, 10)]
)
DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
MACHINE_NAME = re.compile(r"^[A-Za-z0-9_-]+$")
MAC_ADDRESS = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")
INTEGER = re.compile(r"^[+-]?\d+$")
EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Validator:
  def __init__(self, data: Optional[Mapping[str, Any]] = None, store=None):
    self._data = dict(data or {})
    self._store = store
    self._errors: List[str] = []
    self._failed = set()
    self._checked = set()

  @classmethod
  def from_form(cls, form: Mapping[str, Any], store=None) -> "Validator":
    """Ingest a submitted form: string values are stripped of surrounding whitespace."""
    data = {}
    for key, value in form.items():
      data[key] = value.strip() if isinstance(value, str) else value
    return cls(data, store=store)

  # ---------- queries ----------

  def errors(self) -> List[str]:
    return list(self._errors)

  def has_errors(self) -> bool:
    return bool(self._errors)

  def is_valid(self) -> bool:
    return not self._errors

  def first_error(self) -> str:
    return self._errors[0] if self._errors else ""

  def get(self, field: str, default=None):
    value = self._data.get(field)
    return default if value is None else value

  def data(self) -> Dict[str, Any]:
    return dict(self._data)

  def cleaned(self) -> Dict[str, Any]:
    """Values of fields that had rules applied and passed all of them."""
    return {
      field: self._data.get(field)
      for field in self._checked
      if field not in self._failed and field in self._data
    }

  def raise_for_errors(self):
    if self._errors:
      raise ValidationError(self._errors)

  # ---------- internals ----------

  def _present(self, field: str) -> bool:
    self._checked.add(field)
    return self._data.get(field) is not None

  def _filled(self, field: str) -> bool:
    return self._present(field) and self._data[field] != ""

  def _add_error(self, field: str, message: str):
    self._failed.add(field)
    self._errors.append(f"{field}: {message}")

  # ---------- rules ----------

  def required(self, field: str, message: str = "Field is required") -> "Validator":
    if not self._filled(field):
      self._add_error(field, message)
    return self

  def min_length(self, field: str, length: int, message: Optional[str] = None) -> "Validator":
    if self._present(field) and len(str(self._data[field])) < length:
      self._add_error(field, message or f"Must be at least {length} characters long")
    return self

  def max_length(self, field: str, length: int, message: Optional[str] = None) -> "Validator":
    if self._present(field) and len(str(self._data[field])) > length:
      self._add_error(field, message or f"Must be no more than {length} characters long")
    return self

  def pattern(self, field: str, regex, message: str = "Invalid format") -> "Validator":
    if self._present(field):
      compiled = re.compile(regex) if isinstance(regex, str) else regex
      if not compiled.search(str(self._data[field])):
        self._add_error(field, message)
    return self

  def numeric(self, field: str, message: str = "Must be a number") -> "Validator":
    if self._present(field):
      try:
        float(self._data[field])
      except (TypeError, ValueError):
        self._add_error(field, message)
    return self

  def integer(self, field: str, message: str = "Must be an integer") -> "Validator":
    if self._present(field):
      value = self._data[field]
      if not (isinstance(value, int) and not isinstance(value, bool)) and not INTEGER.fullmatch(str(value)):
        self._add_error(field, message)
    return self

  def range(self, field: str, low: int, high: int, message: Optional[str] = None) -> "Validator":
    if self._present(field):
      try:
        value = int(str(self._data[field]))
      except ValueError:
        value = None
      if value is None or value < low or value > high:
        self._add_error(field, message or f"Must be between {low} and {high}")
    return self

  def email(self, field: str, message: str = "Invalid email format") -> "Validator":
    if self._present(field) and not EMAIL.fullmatch(str(self._data[field])):
      self._add_error(field, message)
    return self

  def ip(self, field: str, message: str = "Invalid IP address") -> "Validator":
    if self._filled(field):
      try:
        ipaddress.ip_address(str(self._data[field]))
      except ValueError:
        self._add_error(field, message)
    return self

  def mac(self, field: str, message: str = "Invalid MAC address format") -> "Validator":
    if self._present(field) and not MAC_ADDRESS.fullmatch(str(self._data[field])):
      self._add_error(field, message)
    return self

  def one_of(self, field: str, allowed: Iterable[Any], message: Optional[str] = None) -> "Validator":
    if self._present(field):
      allowed = list(allowed)
      if self._data[field] not in allowed:
        self._add_error(field, message or f"Must be one of: {', '.join(str(a) for a in allowed)}")
    return self

  def filename(self, field: str, message: str = "Invalid filename") -> "Validator":
    if self._present(field):
      value = str(self._data[field])
      if FILENAME_FORBIDDEN.search(value):
        self._add_error(field, message)
      elif value.upper() in RESERVED_NAMES:
        self._add_error(field, "Reserved filename")
    return self

  def safe_path(self, field: str, message: str = "Invalid file path") -> "Validator":
    if self._present(field):
      value = str(self._data[field])
      if (
        value.startswith("./")
        or value.startswith(".\\")
        or value.startswith("../")
        or value.startswith("..\\")
        or "/../" in value
        or "\\..\\" in value
        or value.endswith("/..")
        or value.endswith("\\..")
        or value in (".", "..")
      ):
        self._add_error(field, message)
      elif value.startswith("/") or DRIVE_PREFIX.match(value):
        self._add_error(field, "Relative paths only")
    return self

  def machine_name(self, field: str,
                   message: str = "Invalid machine name. Use only letters, numbers, hyphens and underscores") -> "Validator":
    if self._present(field) and not MACHINE_NAME.fullmatch(str(self._data[field])):
      self._add_error(field, message)
    return self

  def unique(self, field: str, table: str, column: str, message: str = "Value already exists",
             exclude: Optional[Mapping[str, Any]] = None) -> "Validator":
    if self._present(field) and field not in self._failed:
      if self._require_store().exists(table, {column: self._data[field]}, exclude=exclude):
        self._add_error(field, message)
    return self

  def exists(self, field: str, table: str, column: str, message: str = "Value does not exist") -> "Validator":
    if self._filled(field) and field not in self._failed:
      if not self._require_store().exists(table, {column: self._data[field]}):
        self._add_error(field, message)
    return self

  def custom(self, field: str, predicate: Callable[[Any], bool], message: str = "Validation failed") -> "Validator":
    if self._present(field) and field not in self._failed and not predicate(self._data[field]):
      self._add_error(field, message)
    return self

  def _require_store(self):
    if self._store is None:
      raise RuntimeError("this rule needs a Validator built with a store")
    return self._store
