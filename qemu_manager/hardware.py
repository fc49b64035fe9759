"""Fixed QEMU hardware catalogue.

Guest architectures, accelerators and NIC models are closed sets: the program
name ``qemu-system-<arch>`` and every ``-accel``/``-device`` value handed to
QEMU is drawn from here, never from request input.
"""
import enum


class Architecture(str, enum.Enum):
  AARCH64 = "aarch64"
  ALPHA = "alpha"
  ARM = "arm"
  AVR = "avr"
  HPPA = "hppa"
  I386 = "i386"
  LOONGARCH64 = "loongarch64"
  M68K = "m68k"
  MICROBLAZE = "microblaze"
  MICROBLAZEEL = "microblazeel"
  MIPS = "mips"
  MIPS64 = "mips64"
  MIPS64EL = "mips64el"
  MIPSEL = "mipsel"
  OR1K = "or1k"
  PPC = "ppc"
  PPC64 = "ppc64"
  RISCV32 = "riscv32"
  RISCV64 = "riscv64"
  RX = "rx"
  S390X = "s390x"
  SH4 = "sh4"
  SH4EB = "sh4eb"
  SPARC = "sparc"
  SPARC64 = "sparc64"
  TRICORE = "tricore"
  X86_64 = "x86_64"
  XTENSA = "xtensa"
  XTENSAEB = "xtensaeb"


class Accelerator(str, enum.Enum):
  TCG = "tcg"
  KVM = "kvm"
  XEN = "xen"
  HAX = "hax"
  HVF = "hvf"
  WHPX = "whpx"


class NetworkAdapter(str, enum.Enum):
  E1000 = "e1000"
  E1000_82544GC = "e1000-82544gc"
  E1000_82545EM = "e1000-82545em"
  E1000E = "e1000e"
  I82550 = "i82550"
  I82551 = "i82551"
  I82557A = "i82557a"
  I82557B = "i82557b"
  I82557C = "i82557c"
  I82558A = "i82558a"
  I82558B = "i82558b"
  I82559A = "i82559a"
  I82559B = "i82559b"
  I82559C = "i82559c"
  I82559ER = "i82559er"
  I82562 = "i82562"
  I82801 = "i82801"
  IGB = "igb"
  NE2K_PCI = "ne2k_pci"
  NE2K_ISA = "ne2k_isa"
  PCNET = "pcnet"
  ROCKER = "rocker"
  RTL8139 = "rtl8139"
  TULIP = "tulip"
  USB_NET = "usb-net"
  VIRTIO_NET_DEVICE = "virtio-net-device"
  VIRTIO_NET_PCI = "virtio-net-pci"
  VIRTIO_NET_PCI_NON_TRANSITIONAL = "virtio-net-pci-non-transitional"
  VIRTIO_NET_PCI_TRANSITIONAL = "virtio-net-pci-transitional"
  VMXNET3 = "vmxnet3"


DEFAULT_ADAPTER = NetworkAdapter.VIRTIO_NET_PCI


def values(catalogue):
  return [member.value for member in catalogue]


def system_program(platform) -> str:
  """Program name for a guest architecture; raises ValueError for unknown ones."""
  return f"qemu-system-{Architecture(platform).value}"
