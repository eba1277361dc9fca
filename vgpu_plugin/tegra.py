"""Integrated (Tegra) GPU devices."""

from __future__ import annotations

from dataclasses import dataclass

from .config import DeviceConfig
from .device_map import DeviceMap

TEGRA_DEVICE_NAME = "tegra"


@dataclass(frozen=True)
class TegraDevice:
    """The single integrated GPU of a Tegra system."""

    def get_uuid(self) -> str:
        return TEGRA_DEVICE_NAME

    def get_paths(self) -> list[str]:
        # A Tegra device has no device nodes of its own.
        return []

    def get_numa_node(self) -> tuple[bool, int]:
        return False, -1


def build_tegra_device_map(config: DeviceConfig) -> DeviceMap:
    """Map the Tegra device to every GPU resource whose pattern matches it."""
    devices = DeviceMap()
    index = 0
    for resource in config.resources.gpus:
        if resource.matches(TEGRA_DEVICE_NAME):
            devices.set_entry(resource.name, str(index), TegraDevice())
            index += 1
    return devices