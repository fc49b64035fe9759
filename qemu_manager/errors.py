"""Error taxonomy shared by the router, the module dispatchers and their handlers.

Nothing above a module dispatcher should ever see one of these: verb handlers
raise them and the dispatcher turns each into a rendered block.
"""


class ConsoleError(Exception):
  """Base class for recoverable console errors."""


class ValidationError(ConsoleError):
  def __init__(self, errors):
    if isinstance(errors, str):
      errors = [errors]
    self.errors = list(errors)
    super().__init__(self.errors[0] if self.errors else "validation failed")


class PathEscapeError(ValidationError):
  """A name resolved to a path outside the configured root."""


class AuthorizationError(ConsoleError):
  def __init__(self, required_role):
    self.required_role = getattr(required_role, "value", required_role)
    super().__init__(f"role {self.required_role} required")


class NotFoundError(ConsoleError):
  def __init__(self, kind: str, name: str):
    self.kind = kind
    self.name = name
    super().__init__(f"{kind} '{name}' not found")


class ExternalProcessError(ConsoleError):
  def __init__(self, result, message: str = "External command failed"):
    self.result = result
    super().__init__(message)


class StorageConstraintError(ConsoleError):
  """Uniqueness or foreign-key rejection reported by the store."""


class DuplicateRouteError(ConsoleError):
  pass


class ConfigError(ConsoleError):
  pass
