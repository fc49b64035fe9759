"""
Per-module verb dispatch.

Each resource module exposes a closed table of verbs. ``manage`` gates on the
module's role, picks the verb (falling back to ``list``), runs it and wraps
the result in the shared manager view. Errors never leave ``manage``: every
ConsoleError becomes its rendered block and anything else is logged and
replaced by a generic failure block.
"""
import logging
from types import MappingProxyType
from typing import Callable, List, Mapping, Sequence, Tuple
from urllib.parse import quote

from qemu_manager import views
from qemu_manager.errors import (
  AuthorizationError, ExternalProcessError, NotFoundError, StorageConstraintError, ValidationError,
)
from qemu_manager.roles import Role

logger = logging.getLogger(__name__)

Verb = Callable[..., str]


class ModuleDispatcher:
  name = ""
  label = ""
  required_role = Role.OPERATOR
  default_verb = "list"
  menu_items: Sequence[Tuple[str, str]] = ()

  def __init__(self, services):
    self.services = services
    table = dict(self.verb_table())
    if self.default_verb not in table:
      raise ValueError(f"{self.name}: default verb {self.default_verb!r} is not exposed")
    self._verbs = MappingProxyType(table)

  def verb_table(self) -> Mapping[str, Verb]:
    raise NotImplementedError

  def state(self, ctx) -> str:
    return ""

  @property
  def verbs(self) -> Tuple[str, ...]:
    return tuple(self._verbs)

  def routes(self) -> List[Tuple[str, Verb]]:
    return [(f"{self.name}/manage", self.manage), (self.name, self.manage)]

  def link(self, verb: str, *args: str) -> str:
    return "?q=" + "/".join(quote(str(segment), safe="") for segment in (self.name, "manage", verb, *args))

  def menu(self) -> List[Tuple[str, str]]:
    return [(self.link(verb), label) for verb, label in self.menu_items]

  def authorize(self, ctx, role=None):
    role = role or self.required_role
    if not ctx.services.identity.require_role(ctx.principal, role):
      raise AuthorizationError(role)

  def manage(self, ctx, args: Sequence[str]) -> str:
    try:
      self.authorize(ctx)
    except AuthorizationError as exc:
      logger.warning(f"[{ctx.request_id}] {self.name} access denied, requires {exc.required_role}")
      return views.access_denied(self.label, exc.required_role)

    args = list(args)
    verb = self.default_verb
    if args and args[0] in self._verbs:
      verb = args.pop(0)

    content = self.invoke(ctx, verb, args)
    return views.manager(self._safe_state(ctx), content, self.menu())

  def invoke(self, ctx, verb: str, args: List[str]) -> str:
    handler = self._verbs[verb]
    try:
      return handler(ctx, args)
    except ValidationError as exc:
      logger.warning(f"[{ctx.request_id}] {self.name}.{verb} validation failed: {exc.errors}")
      return views.validation_block(exc.errors)
    except AuthorizationError as exc:
      logger.warning(f"[{ctx.request_id}] {self.name}.{verb} denied, requires {exc.required_role}")
      return views.access_denied(self.label, exc.required_role)
    except NotFoundError as exc:
      logger.info(f"[{ctx.request_id}] {self.name}.{verb}: {exc}")
      return views.error_block(f"{exc.kind} '{exc.name}' does not exist")
    except ExternalProcessError as exc:
      logger.error(f"[{ctx.request_id}] {self.name}.{verb}: {exc} ({exc.result.command_line})")
      return views.error_block(exc.result.output or [str(exc)], title=str(exc))
    except StorageConstraintError:
      logger.warning(f"[{ctx.request_id}] {self.name}.{verb} rejected by a storage constraint")
      return views.error_block("The change conflicts with an existing record")
    except Exception:
      logger.exception(f"[{ctx.request_id}] {self.name}.{verb} failed")
      return views.failure_block(ctx.request_id)

  def _safe_state(self, ctx) -> str:
    try:
      return self.state(ctx)
    except Exception:
      logger.exception(f"[{ctx.request_id}] {self.name} state unavailable")
      return "state unavailable"
