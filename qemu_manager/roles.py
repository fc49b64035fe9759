"""Role policy: a fixed total order over roles."""
import enum
from typing import Union


class Role(str, enum.Enum):
  VIEWER = "viewer"
  OPERATOR = "operator"
  ADMIN = "admin"

  @property
  def priority(self) -> int:
    return ROLE_PRIORITY[self]


ROLE_PRIORITY = {
  Role.VIEWER: 10,
  Role.OPERATOR: 20,
  Role.ADMIN: 30,
}


def priority(role: Union[Role, str, None]) -> int:
  """Priority of a role; anything unknown maps to 0."""
  try:
    return ROLE_PRIORITY[Role(role)]
  except ValueError:
    return 0


def satisfies(actual, required) -> bool:
  # An unknown requirement is never met: fail closed on both sides.
  needed = priority(required)
  if needed == 0:
    return False
  return priority(actual) >= needed
