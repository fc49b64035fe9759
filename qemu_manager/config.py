import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from qemu_manager.errors import ConfigError
from qemu_manager.hardware import Accelerator, Architecture


@dataclass(frozen=True)
class Config:
  host: str = "0.0.0.0"
  port: int = 8080
  secret_key: str = "change-me-now"
  log_level: str = "INFO"
  site_title: str = "QEMU Manager"
  database_url: str = "sqlite:///data/database.sqlite"
  images_dir: Path = Path("images")
  platform: str = Architecture.X86_64.value
  accelerator: Optional[str] = None
  session_max_age: int = 7200
  process_timeout: Optional[float] = None

  @classmethod
  def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Config":
    env = os.environ if env is None else env
    cwd = Path.cwd()
    default_db = f"sqlite:///{(cwd / 'data' / 'database.sqlite').as_posix()}"
    platform = env.get("QEMU_PLATFORM", Architecture.X86_64.value).strip()
    accel = env.get("QEMU_ACCEL", "").strip() or None
    if platform not in {a.value for a in Architecture}:
      raise ConfigError(f"QEMU_PLATFORM={platform!r} is not a known architecture")
    if accel is not None and accel not in {a.value for a in Accelerator}:
      raise ConfigError(f"QEMU_ACCEL={accel!r} is not a known accelerator")
    timeout = env.get("PROCESS_TIMEOUT", "").strip()
    return cls(
      host=env.get("HOST", "0.0.0.0").strip(),
      port=_as_int(env, "PORT", 8080),
      secret_key=env.get("FLASK_SECRET_KEY", "change-me-now"),
      log_level=env.get("LOG_LEVEL", "INFO").upper(),
      site_title=env.get("SITE_TITLE", "QEMU Manager"),
      database_url=env.get("QEMU_DATABASE_URL", default_db).strip(),
      images_dir=Path(env.get("QEMU_IMAGES_DIR", str(cwd / "images"))),
      platform=platform,
      accelerator=accel,
      session_max_age=_as_int(env, "SESSION_MAX_AGE", 7200),
      process_timeout=_as_float(timeout) if timeout else None,
    )


def _as_int(env, name, default):
  raw = env.get(name, "").strip()
  if not raw:
    return default
  try:
    return int(raw)
  except ValueError:
    raise ConfigError(f"{name}={raw!r} is not an integer") from None


def _as_float(raw):
  try:
    return float(raw)
  except ValueError:
    raise ConfigError(f"PROCESS_TIMEOUT={raw!r} is not a number") from None


def configure_logging(level_name: str = "INFO"):
  level = getattr(logging, level_name.upper(), logging.INFO)
  logging.basicConfig(
    level=level,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
  )
  logging.getLogger("qemu_manager").setLevel(level)
  # Waitress logs
  logging.getLogger("waitress").setLevel(logging.INFO)
  # SQLAlchemy echoes every statement at INFO
  logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
