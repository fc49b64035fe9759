"""User accounts: creation, credential checks and profile updates."""
import logging
from typing import Any, Dict, Mapping, Optional

import bcrypt

from qemu_manager.errors import StorageConstraintError, ValidationError
from qemu_manager.roles import Role
from qemu_manager.storage import utcnow
from qemu_manager.validator import Validator

logger = logging.getLogger(__name__)

TABLE = "users"
USERNAME_PATTERN = r"^[a-zA-Z0-9_.-]{3,32}$"
ROLES = [r.value for r in Role]


def hash_password(password: str) -> str:
  return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def check_password(password: str, password_hash: str) -> bool:
  try:
    return bcrypt.checkpw(password.encode(), password_hash.encode())
  except ValueError:
    return False


def _public(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
  if row is None:
    return None
  row = dict(row)
  row.pop("password_hash", None)
  return row


class Users:
  def __init__(self, store):
    self.store = store

  def find_by_id(self, user_id: int) -> Optional[Dict[str, Any]]:
    return _public(self.store.first(TABLE, {"id": user_id}))

  def find_by_username(self, username: str) -> Optional[Dict[str, Any]]:
    return _public(self.store.first(TABLE, {"username": username}))

  def count_users(self) -> int:
    return self.store.count(TABLE)

  def has_any_admin(self) -> bool:
    return self.store.exists(TABLE, {"role": Role.ADMIN.value, "is_active": True})

  def create(self, data: Mapping[str, Any]) -> int:
    """Create an account and return its id; raises ValidationError on bad input or duplicates."""
    data = dict(data)
    data.setdefault("role", Role.VIEWER.value)
    validator = Validator(data, store=self.store)
    validator \
      .required("username", "Username is required") \
      .pattern("username", USERNAME_PATTERN,
               "Username must be 3-32 chars and contain only letters, numbers, dot, underscore, hyphen") \
      .required("email", "Email is required") \
      .email("email") \
      .required("password", "Password is required") \
      .min_length("password", 8, "Password must be at least 8 characters") \
      .custom("password", lambda p: len(p.encode()) <= 72, "Password must be no more than 72 bytes") \
      .one_of("role", ROLES, "Invalid user role") \
      .unique("username", TABLE, "username", "Username already exists") \
      .unique("email", TABLE, "email", "Email already exists")
    if validator.has_errors():
      logger.warning(f"user.create.validation_failed errors={validator.errors()}")
      raise ValidationError(validator.errors())

    now = utcnow()
    try:
      user_id = self.store.insert(TABLE, {
        "username": data["username"],
        "email": data["email"],
        "password_hash": hash_password(data["password"]),
        "role": data["role"],
        "is_active": True,
        "created_at": now,
        "updated_at": now,
        "last_login_at": None,
      })
    except StorageConstraintError as exc:
      logger.warning(f"user.create.duplicate username={data['username']}")
      if self.store.exists(TABLE, {"username": data["username"]}):
        raise ValidationError("username: Username already exists") from None
      if self.store.exists(TABLE, {"email": data["email"]}):
        raise ValidationError("email: Email already exists") from None
      raise exc
    logger.info(f"user.create.success user_id={user_id} username={data['username']} role={data['role']}")
    return user_id

  def verify_credentials(self, username: str, password: str) -> Optional[Dict[str, Any]]:
    row = self.store.first(TABLE, {"username": username, "is_active": True})
    if row is None:
      logger.warning(f"user.login.not_found username={username}")
      return None
    if not check_password(password, row["password_hash"]):
      logger.warning(f"user.login.invalid_password username={username}")
      return None
    return _public(row)

  def touch_last_login(self, user_id: int):
    now = utcnow()
    self.store.update(TABLE, {"last_login_at": now, "updated_at": now}, {"id": user_id})

  def update_profile(self, user_id: int, changes: Mapping[str, Any]):
    current = self.store.first(TABLE, {"id": user_id})
    if current is None:
      raise ValidationError("user: User not found")
    merged = {
      "email": changes.get("email", current["email"]),
      "role": changes.get("role", current["role"]),
      "is_active": bool(changes.get("is_active", current["is_active"])),
    }
    validator = Validator(merged, store=self.store)
    validator \
      .required("email", "Email is required") \
      .email("email") \
      .one_of("role", ROLES, "Invalid user role")
    if merged["email"] != current["email"]:
      validator.unique("email", TABLE, "email", "Email already exists")
    validator.raise_for_errors()
    try:
      self.store.update(TABLE, dict(merged, updated_at=utcnow()), {"id": user_id})
    except StorageConstraintError:
      raise ValidationError("email: Email already exists") from None
    logger.info(f"user.update_profile.success user_id={user_id}")

  def change_password(self, user_id: int, old_password: str, new_password: str):
    row = self.store.first(TABLE, {"id": user_id})
    if row is None or not check_password(old_password, row["password_hash"]):
      logger.warning(f"user.change_password.denied user_id={user_id}")
      raise ValidationError("password: Current password is incorrect")
    Validator({"password": new_password}) \
      .min_length("password", 8, "Password must be at least 8 characters") \
      .custom("password", lambda p: len(p.encode()) <= 72, "Password must be no more than 72 bytes") \
      .raise_for_errors()
    self.store.update(TABLE, {"password_hash": hash_password(new_password), "updated_at": utcnow()}, {"id": user_id})
    logger.info(f"user.change_password.success user_id={user_id}")
