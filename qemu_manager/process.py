"""
External process invocation.

Commands are always argv lists handed straight to ``subprocess.run`` (no
shell), so untrusted values stay discrete arguments. Failures never raise:
the result carries an ``"error: ..."`` marker as its first output line and
callers check ``result.failed``.
"""
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from qemu_manager.errors import PathEscapeError

logger = logging.getLogger(__name__)

ERROR_MARKER = "error:"
QEMU_IMG = "qemu-img"
PKILL = "pkill"


@dataclass
class CommandResult:
  program: str
  argv: List[str]
  output: List[str] = field(default_factory=list)
  exit_code: int = 0

  @property
  def failed(self) -> bool:
    return bool(self.output) and self.output[0].startswith(ERROR_MARKER)

  @property
  def command_line(self) -> str:
    return shlex.join(self.argv)

  def text(self) -> str:
    return "\n".join(self.output)


class ProcessInvoker:
  def __init__(self, timeout: Optional[float] = None):
    self.timeout = timeout

  def run(self, argv: Sequence[str], request_id: str = "-") -> CommandResult:
    argv = [str(a) for a in argv]
    if not argv:
      raise ValueError("empty command")
    result = CommandResult(program=argv[0], argv=argv)
    logger.info(f"[{request_id}] executing command: {result.command_line}")
    try:
      completed = self._execute(argv)
    except subprocess.TimeoutExpired:
      result.exit_code = -1
      result.output = [f"{ERROR_MARKER} command timed out after {self.timeout}s"]
    except OSError as exc:
      result.exit_code = 127
      result.output = [f"{ERROR_MARKER} {exc.strerror or exc}"]
    else:
      result.exit_code = completed.returncode
      lines = (completed.stdout or "").splitlines()
      if completed.returncode != 0:
        detail = [line for line in (completed.stderr or "").splitlines() if line.strip()]
        result.output = [f"{ERROR_MARKER} command failed with code {completed.returncode}"] + detail + lines
      else:
        result.output = lines
    if result.failed:
      logger.error(f"[{request_id}] command failed ({result.exit_code}): {result.command_line} -> {result.output[0]}")
    return result

  def _execute(self, argv: List[str]) -> subprocess.CompletedProcess:
    return subprocess.run(argv, capture_output=True, text=True, check=False, timeout=self.timeout)


def resolve_in_root(root, name: str) -> Path:
  """Resolve ``name`` under ``root`` and require the canonical path to stay inside it.

  Symlinks are followed before the check, so a link pointing out of the root
  is rejected even when the name itself looks harmless.
  """
  real_root = Path(os.path.realpath(root))
  candidate = Path(os.path.realpath(real_root / name))
  if candidate == real_root or real_root not in candidate.parents:
    raise PathEscapeError([f"path: '{name}' resolves outside the images directory"])
  return candidate
