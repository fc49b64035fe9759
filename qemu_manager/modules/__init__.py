"""Resource modules: disk images, virtual machines and their networking."""
from qemu_manager.modules.images import ImageModule
from qemu_manager.modules.machines import MachineModule
from qemu_manager.modules.network import NetworkModule

MODULES = (ImageModule, MachineModule, NetworkModule)

__all__ = ["ImageModule", "MachineModule", "NetworkModule", "MODULES"]
