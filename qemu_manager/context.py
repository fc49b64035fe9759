from dataclasses import dataclass, field
from typing import Any, Dict, MutableMapping, Optional

from qemu_manager.config import Config
from qemu_manager.identity import Identity, Principal
from qemu_manager.process import ProcessInvoker
from qemu_manager.storage import Store
from qemu_manager.users import Users


@dataclass
class Services:
  """Long-lived collaborators built once at startup."""
  config: Config
  store: Store
  invoker: ProcessInvoker
  users: Users
  identity: Identity

  @classmethod
  def build(cls, config: Config, store: Store, invoker: Optional[ProcessInvoker] = None) -> "Services":
    users = Users(store)
    return cls(
      config=config,
      store=store,
      invoker=invoker or ProcessInvoker(timeout=config.process_timeout),
      users=users,
      identity=Identity(users, session_max_age=config.session_max_age),
    )


@dataclass
class RequestContext:
  """Everything one request handler may look at."""
  services: Services
  principal: Optional[Principal] = None
  session: MutableMapping[str, Any] = field(default_factory=dict)
  method: str = "GET"
  form: Dict[str, str] = field(default_factory=dict)
  request_id: str = "-"

  @property
  def submitted(self) -> bool:
    return self.method == "POST"

  @property
  def config(self) -> Config:
    return self.services.config

  @property
  def store(self) -> Store:
    return self.services.store

  @property
  def invoker(self) -> ProcessInvoker:
    return self.services.invoker

  def run(self, argv):
    return self.services.invoker.run(argv, request_id=self.request_id)
