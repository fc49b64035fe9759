"""Web console for QEMU disk images, virtual machines and their networking."""
__version__ = "0.1.0"
