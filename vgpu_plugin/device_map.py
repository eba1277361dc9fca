"""Building the map from resource names to the devices they expose."""

from __future__ import annotations

import dataclasses
import logging
from contextlib import contextmanager
from typing import Iterator

from .config import (
    DeviceConfig,
    MigStrategy,
    ReplicatedResource,
    is_gpu_index_ref,
    is_mig_index_ref,
    is_uuid_ref,
)
from .devices import Device, DeviceError, DeviceInfo, Devices, build_device, new_annotated_id
from .mig import NVCAPS_MIG_MINORS_PATH
from .nvml import DeviceLib, NvmlError
from .nvml_devices import new_gpu_device, new_mig_device

log = logging.getLogger(__name__)


class DeviceMapError(Exception):
    """The device map could not be built."""


@contextmanager
def _wrapped(message: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        raise DeviceMapError(f"{message}: {exc}") from exc


class DeviceMap(dict):
    """Devices keyed by resource name."""

    def insert(self, name: str, device: Device) -> None:
        self.setdefault(name, Devices())[device.id] = device

    def merge(self, other: "DeviceMap") -> None:
        for name, devices in other.items():
            for device in devices.values():
                self.insert(name, device)

    def is_empty(self) -> bool:
        return not any(self.values())

    def set_entry(self, name: str, index: str, info: DeviceInfo) -> None:
        try:
            device = build_device(index, info)
        except DeviceError as exc:
            raise DeviceMapError(f"error building Device: {exc}") from exc
        self.insert(name, device)

    def ids_to_replicate(self, resource: ReplicatedResource) -> list[str]:
        """Return the IDs of the devices of ``resource`` that are to be replicated."""
        devices = self.get(resource.name)
        if devices is None:
            return []
        selection = resource.devices
        if selection.all:
            return devices.get_ids()
        if selection.count > 0:
            if selection.count > len(devices):
                raise DeviceMapError(
                    f"requested {selection.count} devices to be replicated, "
                    f"but only {len(devices)} devices available"
                )
            return devices.get_ids()[: selection.count]
        if selection.ids:
            ids: list[str] = []
            for ref in selection.ids:
                if is_uuid_ref(ref):
                    device = devices.get_by_id(ref)
                    if device is None:
                        raise DeviceMapError(f"no matching device with UUID: {ref}")
                    ids.append(device.id)
                if is_gpu_index_ref(ref) or is_mig_index_ref(ref):
                    device = devices.get_by_index(ref)
                    if device is None:
                        raise DeviceMapError(f"no matching device at index: {ref}")
                    ids.append(device.id)
            return ids
        raise DeviceMapError("unexpected error")


@dataclasses.dataclass
class DeviceMapBuilder:
    """Walks the devices of a node and sorts them into resources."""

    device_lib: DeviceLib
    config: DeviceConfig
    is_wsl: bool = False
    mig_minors_path: str = NVCAPS_MIG_MINORS_PATH

    def build(self) -> DeviceMap:
        with _wrapped("error building device map from config.resources"):
            devices = self._build_from_config_resources()
        with _wrapped(
            "error updating device map with replicas from config.sharing.timeSlicing.resources"
        ):
            return update_device_map_with_replicas(self.config, devices)

    def _build_from_config_resources(self) -> DeviceMap:
        with _wrapped("error building GPU device map"):
            device_map = self.build_gpu_device_map()

        strategy = self.config.flags.mig_strategy
        if strategy == MigStrategy.NONE:
            return device_map

        with _wrapped("error building MIG device map"):
            mig_device_map = self.build_mig_device_map()

        uniform = strategy == MigStrategy.SINGLE
        with _wrapped("invalid MIG configuration"):
            self.assert_all_mig_devices_are_valid(uniform)

        if uniform and not device_map.is_empty() and not mig_device_map.is_empty():
            raise DeviceMapError(
                "all devices on the node must be configured with the same migEnabled value"
            )

        device_map.merge(mig_device_map)
        return device_map

    def build_gpu_device_map(self) -> DeviceMap:
        """Map full GPUs to resources; the walk stops quietly at the first failure."""
        devices = DeviceMap()
        strategy = self.config.flags.mig_strategy

        def visit(i, gpu) -> None:
            try:
                name = gpu.get_name()
            except NvmlError as exc:
                raise DeviceMapError(f"error getting product name for GPU: {exc}") from exc
            try:
                mig_enabled = gpu.is_mig_enabled()
            except Exception as exc:
                raise DeviceMapError(f"error checking if MIG is enabled on GPU: {exc}") from exc
            if mig_enabled and strategy != MigStrategy.NONE:
                return
            for resource in self.config.resources.gpus:
                if resource.matches(name):
                    index, info = new_gpu_device(i, gpu, self.is_wsl)
                    devices.set_entry(resource.name, index, info)
                    return
            raise DeviceMapError(f"GPU name '{name}' does not match any resource patterns")

        try:
            self.device_lib.visit_devices(visit)
        except Exception as exc:
            log.warning("Stopped walking GPU devices: %s", exc)
        return devices

    def build_mig_device_map(self) -> DeviceMap:
        devices = DeviceMap()

        def visit(i, gpu, j, mig) -> None:
            try:
                profile = mig.get_profile()
            except Exception as exc:
                raise DeviceMapError(
                    f"error getting MIG profile for MIG device at index '({i}, {j})': {exc}"
                ) from exc
            for resource in self.config.resources.migs:
                if resource.matches(str(profile)):
                    index, info = new_mig_device(i, j, mig)
                    info = dataclasses.replace(info, minors_path=self.mig_minors_path)
                    devices.set_entry(resource.name, index, info)
                    return
            raise DeviceMapError(f"MIG profile '{profile}' does not match any resource patterns")

        self.device_lib.visit_mig_devices(visit)
        return devices

    def assert_all_mig_devices_are_valid(self, uniform: bool) -> None:
        """Check each MIG-enabled GPU has MIG devices, and optionally that all are alike."""

        def visit_gpu(i, gpu) -> None:
            if not gpu.is_mig_enabled():
                return
            if not gpu.get_mig_devices():
                raise DeviceMapError(f"device {i} has an invalid MIG configuration")

        with _wrapped("at least one device with migEnabled=true was not configured correctly"):
            self.device_lib.visit_devices(visit_gpu)

        if not uniform:
            return

        seen: list = []

        def visit_mig(i, gpu, j, mig) -> None:
            try:
                attributes = mig.get_attributes()
            except NvmlError as exc:
                raise DeviceMapError(f"error getting device attributes: {exc}") from exc
            if not seen:
                seen.append(attributes)
            elif attributes != seen[0]:
                raise DeviceMapError("more than one MIG device type present on node")

        self.device_lib.visit_mig_devices(visit_mig)


def new_device_map(device_lib: DeviceLib, config: DeviceConfig, is_wsl: bool = False) -> DeviceMap:
    """Build the device map of the node described by ``device_lib``."""
    return DeviceMapBuilder(device_lib, config, is_wsl).build()


def update_device_map_with_replicas(config: DeviceConfig, devices: DeviceMap) -> DeviceMap:
    """Return a new map in which time-sliced resources are replaced by their replicas."""
    result = DeviceMap()
    names = {r.name for r in config.time_slicing}

    for name, ds in devices.items():
        if name not in names:
            result[name] = ds

    for resource in config.time_slicing:
        with _wrapped(f"unable to get IDs of devices to replicate for '{resource.name}' resource"):
            ids = devices.ids_to_replicate(resource)
        if not ids:
            continue

        originals = devices[resource.name]
        for device in originals.difference(originals.subset(ids)).values():
            result.insert(resource.name, device)

        name = resource.rename or resource.name
        for device_id in ids:
            original = originals[device_id]
            for replica in range(resource.replicas):
                result.insert(
                    name,
                    dataclasses.replace(
                        original,
                        id=new_annotated_id(device_id, replica),
                        paths=list(original.paths),
                    ),
                )
    return result