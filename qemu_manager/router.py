"""
Path router for the ``?q=`` console parameter.

Routes are registered explicitly at startup, where registering a key again
replaces the earlier handler, then the table is frozen. A path
is split on ``/``; a two-segment key (``"module/action"``) wins over a
one-segment key, and anything else falls through to the default route with no
arguments.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

from qemu_manager.errors import DuplicateRouteError

logger = logging.getLogger(__name__)

DEFAULT_KEY = "/"

# handler(ctx, args) -> rendered HTML
Handler = Callable[..., str]


@dataclass(frozen=True)
class Route:
  key: str
  handler: Handler


def _default_handler(ctx, args) -> str:
  return ""


class Router:
  def __init__(self):
    self._routes = {DEFAULT_KEY: Route(DEFAULT_KEY, _default_handler)}
    self._frozen = False

  def register(self, key: str, handler: Handler):
    if self._frozen:
      raise DuplicateRouteError(f"route table is frozen, cannot register {key!r}")
    if not callable(handler):
      raise TypeError(f"handler for {key!r} is not callable")
    if key == DEFAULT_KEY:
      raise DuplicateRouteError("the default route is built in")
    key = key.strip("/")
    if not key or key.count("/") > 1:
      raise ValueError(f"route key must have one or two segments, got {key!r}")
    if key in self._routes:
      logger.warning(f"Route {key!r} registered again, the later handler wins")
    self._routes[key] = Route(key, handler)

  def freeze(self):
    self._frozen = True

  def resolve(self, path: str) -> Tuple[Route, List[str]]:
    chunks = [c for c in (path or "").split("/") if c]
    if len(chunks) > 1:
      pair = f"{chunks[0]}/{chunks[1]}"
      if pair in self._routes:
        return self._routes[pair], chunks[2:]
    if chunks and chunks[0] in self._routes:
      return self._routes[chunks[0]], chunks[1:]
    return self._routes[DEFAULT_KEY], []

  def routes(self, prefix: str = "") -> List[str]:
    return [key for key in self._routes if key.startswith(prefix)]

  def register_all(self, entries: Sequence[Tuple[str, Handler]]):
    for key, handler in entries:
      self.register(key, handler)
