"""
Pytest configuration and shared fixtures for the QEMU manager tests
"""
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from qemu_manager.config import Config  # noqa: E402
from qemu_manager.context import RequestContext, Services  # noqa: E402
from qemu_manager.identity import Principal  # noqa: E402
from qemu_manager.process import ProcessInvoker  # noqa: E402
from qemu_manager.storage import Store  # noqa: E402


class FakeInvoker(ProcessInvoker):
  """Records every argv and answers from a table instead of spawning processes."""

  def __init__(self):
    super().__init__(timeout=None)
    self.calls = []
    self.responses = {}
    self.on_call = None

  def respond(self, key, returncode=0, stdout="", stderr=""):
    self.responses[key] = (returncode, stdout, stderr)

  def calls_for(self, *prefix):
    return [argv for argv in self.calls if argv[:len(prefix)] == list(prefix)]

  def _execute(self, argv):
    self.calls.append(list(argv))
    if self.on_call is not None:
      self.on_call(argv)
    key = " ".join(argv[:2])
    returncode, stdout, stderr = self.responses.get(key) or self.responses.get(argv[0]) or (0, "", "")
    return subprocess.CompletedProcess(argv, returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def images_dir(tmp_path):
  root = tmp_path / "images"
  root.mkdir()
  return root


@pytest.fixture
def config(tmp_path, images_dir):
  return Config(
    secret_key="test-secret",
    database_url=f"sqlite:///{(tmp_path / 'test.sqlite').as_posix()}",
    images_dir=images_dir,
    platform="x86_64",
  )


@pytest.fixture
def store(config):
  s = Store.from_url(config.database_url)
  s.init_schema()
  return s


@pytest.fixture
def invoker():
  return FakeInvoker()


@pytest.fixture
def services(config, store, invoker):
  return Services.build(config, store, invoker)


@pytest.fixture
def make_principal():
  def factory(role="operator", username="tester", user_id=1):
    return Principal(user_id, username, role, datetime.now(timezone.utc))
  return factory


@pytest.fixture
def make_ctx(services, make_principal):
  def factory(role="operator", method="GET", form=None, session=None):
    return RequestContext(
      services=services,
      principal=make_principal(role) if role else None,
      session=session if session is not None else {},
      method=method,
      form=dict(form or {}),
      request_id="test",
    )
  return factory
