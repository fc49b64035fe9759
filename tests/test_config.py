from pathlib import Path

import pytest

from qemu_manager import hardware
from qemu_manager.config import Config
from qemu_manager.errors import ConfigError


class TestConfigFromEnv:
  def test_defaults(self):
    config = Config.from_env({})
    assert config.port == 8080
    assert config.platform == "x86_64"
    assert config.accelerator is None
    assert config.process_timeout is None
    assert config.session_max_age == 7200
    assert config.database_url.startswith("sqlite:///")

  def test_overrides(self):
    config = Config.from_env({
      "HOST": "127.0.0.1", "PORT": "9000", "LOG_LEVEL": "debug",
      "QEMU_IMAGES_DIR": "/srv/images", "QEMU_PLATFORM": "aarch64", "QEMU_ACCEL": "kvm",
      "PROCESS_TIMEOUT": "30", "SESSION_MAX_AGE": "60",
    })
    assert (config.host, config.port, config.log_level) == ("127.0.0.1", 9000, "DEBUG")
    assert config.images_dir == Path("/srv/images")
    assert (config.platform, config.accelerator) == ("aarch64", "kvm")
    assert config.process_timeout == 30.0
    assert config.session_max_age == 60

  @pytest.mark.parametrize("env", [
    {"QEMU_PLATFORM": "z80"},
    {"QEMU_ACCEL": "turbo"},
    {"PORT": "http"},
    {"PROCESS_TIMEOUT": "soon"},
  ])
  def test_invalid_values(self, env):
    with pytest.raises(ConfigError):
      Config.from_env(env)


class TestHardware:
  def test_system_program(self):
    assert hardware.system_program("x86_64") == "qemu-system-x86_64"
    assert hardware.system_program(hardware.Architecture.RISCV64) == "qemu-system-riscv64"

  def test_unknown_platform_never_becomes_a_program_name(self):
    with pytest.raises(ValueError):
      hardware.system_program("x86_64; rm -rf /")

  def test_catalogue_values(self):
    assert "virtio-net-pci" in hardware.values(hardware.NetworkAdapter)
    assert hardware.DEFAULT_ADAPTER.value == "virtio-net-pci"
    assert hardware.values(hardware.Accelerator) == ["tcg", "kvm", "xen", "hax", "hvf", "whpx"]
