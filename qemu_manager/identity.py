"""
Session-backed identity.

The browser session only carries the principal's keys. ``resolve`` turns it
into a Principal once per request (refreshing the role from storage) and that
value is handed explicitly to whatever needs to know who is calling.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, MutableMapping, Optional

from qemu_manager import roles
from qemu_manager.errors import ValidationError
from qemu_manager.roles import Role
from qemu_manager.users import Users

logger = logging.getLogger(__name__)

SESSION_USER_ID = "auth_user_id"
SESSION_USERNAME = "auth_username"
SESSION_ROLE = "auth_role"
SESSION_LOGIN_AT = "auth_login_at"
SESSION_KEYS = (SESSION_USER_ID, SESSION_USERNAME, SESSION_ROLE, SESSION_LOGIN_AT)


@dataclass(frozen=True)
class Principal:
  id: int
  username: str
  role: str
  login_at: datetime

  def satisfies(self, required) -> bool:
    return roles.satisfies(self.role, required)


class Identity:
  def __init__(self, users: Users, session_max_age: int = 0):
    self.users = users
    self.session_max_age = session_max_age

  def login(self, session: MutableMapping[str, Any], username: str, password: str) -> Optional[Principal]:
    user = self.users.verify_credentials(username, password)
    if user is None:
      logger.warning(f"auth.login.failed username={username}")
      return None
    now = time.time()
    session[SESSION_USER_ID] = int(user["id"])
    session[SESSION_USERNAME] = str(user["username"])
    session[SESSION_ROLE] = str(user["role"])
    session[SESSION_LOGIN_AT] = now
    self.users.touch_last_login(int(user["id"]))
    logger.info(f"auth.login.success user_id={user['id']} username={user['username']}")
    return Principal(int(user["id"]), str(user["username"]), str(user["role"]), _as_datetime(now))

  def logout(self, session: MutableMapping[str, Any]):
    user_id = session.get(SESSION_USER_ID)
    username = session.get(SESSION_USERNAME, "")
    for key in SESSION_KEYS:
      session.pop(key, None)
    logger.info(f"auth.logout user_id={user_id} username={username}")

  def resolve(self, session: MutableMapping[str, Any]) -> Optional[Principal]:
    user_id = session.get(SESSION_USER_ID)
    if user_id is None:
      return None
    login_at = session.get(SESSION_LOGIN_AT) or 0
    if self.session_max_age and (time.time() - login_at) > self.session_max_age:
      logger.info(f"auth.session.expired user_id={user_id}")
      self.logout(session)
      return None
    user = self.users.find_by_id(int(user_id))
    if user is None or not user.get("is_active"):
      logger.warning(f"auth.session.invalid user_id={user_id}")
      self.logout(session)
      return None
    if user["role"] != session.get(SESSION_ROLE):
      session[SESSION_ROLE] = user["role"]
    return Principal(int(user["id"]), str(user["username"]), str(user["role"]), _as_datetime(login_at))

  def require_auth(self, principal: Optional[Principal]) -> bool:
    if principal is not None:
      return True
    logger.warning("auth.require_auth.denied")
    return False

  def require_role(self, principal: Optional[Principal], required) -> bool:
    if not self.require_auth(principal):
      return False
    if principal.satisfies(required):
      return True
    logger.warning(f"auth.require_role.denied required={_role_name(required)} user_id={principal.id}")
    return False

  def needs_bootstrap_admin(self) -> bool:
    return not self.users.has_any_admin()

  def register(self, form: Mapping[str, str], role: Role = Role.VIEWER) -> int:
    _check_confirmation(form)
    return self.users.create({
      "username": (form.get("username") or "").strip(),
      "email": (form.get("email") or "").strip(),
      "password": form.get("password", ""),
      "role": role.value,
    })


def _check_confirmation(form: Mapping[str, str]):
  if form.get("password", "") != form.get("password_confirm", ""):
    raise ValidationError("password_confirm: Password confirmation does not match")


def _role_name(role) -> str:
  return role.value if isinstance(role, Role) else str(role)


def _as_datetime(ts: float) -> datetime:
  return datetime.fromtimestamp(ts, tz=timezone.utc)
