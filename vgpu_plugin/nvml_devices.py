"""Device information sources backed by GPU, MIG and WSL device handles."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .devices import WSL_DEVICE_PATH, DeviceError
from .mig import NVCAPS_MIG_MINORS_PATH, NVIDIA_CAPABILITIES_PATH, get_mig_capability_device_paths
from .nvml import NvmlDevice, NvmlError, decode_c_string

PCI_DEVICES_PATH = "/sys/bus/pci/devices"

_INT_RE = re.compile(r"[+-]?\d+")


def _device_node_path(minor: int) -> str:
    return f"/dev/nvidia{minor}"


def _read_numa_node(bus_id_raw, sysfs_root: str) -> tuple[bool, int]:
    bus_id = bus_id_raw if isinstance(bus_id_raw, str) else decode_c_string(bus_id_raw)
    # Discard the leading zeros of the PCI domain.
    bus_id = bus_id.removeprefix("0000").lower()
    try:
        text = Path(f"{sysfs_root}/{bus_id}/numa_node").read_text()
    except OSError:
        return False, 0
    value = text.strip()
    if not _INT_RE.fullmatch(value):
        raise DeviceError(f"error parsing value for NUMA node: {value!r}")
    node = int(value)
    if node < 0:
        return False, 0
    return True, node


@dataclass(frozen=True)
class NvmlGpuDevice:
    """A full GPU."""

    device: NvmlDevice
    sysfs_root: str = PCI_DEVICES_PATH

    def get_uuid(self) -> str:
        return self.device.get_uuid()

    def get_paths(self) -> list[str]:
        try:
            minor = self.device.get_minor_number()
        except NvmlError as exc:
            raise DeviceError(f"error getting GPU device minor number: {exc}") from exc
        return [_device_node_path(minor)]

    def get_numa_node(self) -> tuple[bool, int]:
        try:
            bus_id = self.device.get_pci_bus_id()
        except NvmlError as exc:
            raise DeviceError(f"error getting PCI Bus Info of device: {exc}") from exc
        return _read_numa_node(bus_id, self.sysfs_root)


@dataclass(frozen=True)
class NvmlMigDevice:
    """A MIG device; its node paths come from the parent and the capability files."""

    device: NvmlDevice
    minors_path: str = NVCAPS_MIG_MINORS_PATH
    sysfs_root: str = PCI_DEVICES_PATH

    def get_uuid(self) -> str:
        return self.device.get_uuid()

    def get_paths(self) -> list[str]:
        try:
            cap_device_paths = get_mig_capability_device_paths(self.minors_path)
        except OSError as exc:
            raise DeviceError(f"error getting MIG capability device paths: {exc}") from exc
        try:
            gi = self.device.get_gpu_instance_id()
        except NvmlError as exc:
            raise DeviceError(f"error getting GPU Instance ID: {exc}") from exc
        try:
            ci = self.device.get_compute_instance_id()
        except NvmlError as exc:
            raise DeviceError(f"error getting Compute Instance ID: {exc}") from exc
        try:
            parent = self.device.get_device_handle_from_mig_device_handle()
        except NvmlError as exc:
            raise DeviceError(f"error getting parent device: {exc}") from exc
        try:
            minor = parent.get_minor_number()
        except NvmlError as exc:
            raise DeviceError(f"error getting GPU device minor number: {exc}") from exc

        gi_cap_path = f"{NVIDIA_CAPABILITIES_PATH}/gpu{minor}/mig/gi{gi}/access"
        if gi_cap_path not in cap_device_paths:
            raise DeviceError(f"missing MIG GPU instance capability path: {gi_cap_path}")
        ci_cap_path = f"{NVIDIA_CAPABILITIES_PATH}/gpu{minor}/mig/gi{gi}/ci{ci}/access"
        if ci_cap_path not in cap_device_paths:
            raise DeviceError(f"missing MIG GPU instance capability path: {gi_cap_path}")

        return [
            _device_node_path(minor),
            cap_device_paths[gi_cap_path],
            cap_device_paths[ci_cap_path],
        ]

    def get_numa_node(self) -> tuple[bool, int]:
        try:
            parent = self.device.get_device_handle_from_mig_device_handle()
        except NvmlError as exc:
            raise DeviceError(f"error getting parent GPU device from MIG device: {exc}") from exc
        return NvmlGpuDevice(parent, self.sysfs_root).get_numa_node()


@dataclass(frozen=True)
class WslDevice:
    """A GPU exposed through the WSL display core device."""

    device: NvmlDevice
    sysfs_root: str = PCI_DEVICES_PATH

    def get_uuid(self) -> str:
        return self.device.get_uuid()

    def get_paths(self) -> list[str]:
        return [WSL_DEVICE_PATH]

    def get_numa_node(self) -> tuple[bool, int]:
        return NvmlGpuDevice(self.device, self.sysfs_root).get_numa_node()


def new_gpu_device(i: int, gpu: NvmlDevice, is_wsl: bool = False) -> tuple[str, NvmlGpuDevice | WslDevice]:
    """Return the index and information source for the GPU at position ``i``."""
    index = str(i)
    if is_wsl:
        return index, WslDevice(gpu)
    return index, NvmlGpuDevice(gpu)


def new_mig_device(i: int, j: int, mig: NvmlDevice) -> tuple[str, NvmlMigDevice]:
    """Return the index and information source for MIG device ``j`` of GPU ``i``."""
    return f"{i}:{j}", NvmlMigDevice(mig)