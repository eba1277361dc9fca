"""Resource managers: one per resource name, each owning a set of devices."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Sequence

from .allocate import AllocationPolicy, distributed_alloc, get_preferred_allocation
from .config import DeviceConfig, MigStrategy, Resource
from .device_map import DeviceMap, new_device_map, update_device_map_with_replicas
from .devices import Device, Devices
from .health import check_health
from .nvml import DeviceLib, NvmlError, NvmlLibrary, PlatformInfo
from .tegra import build_tegra_device_map

log = logging.getLogger(__name__)

CONTROL_DEVICE_PATHS = (
    "/dev/nvidiactl",
    "/dev/nvidia-uvm",
    "/dev/nvidia-uvm-tools",
    "/dev/nvidia-modeset",
)


class ResourceManagerError(Exception):
    """Resource managers could not be constructed."""


@dataclass
class ResourceManager:
    """A resource name with the devices exposed under it."""

    config: DeviceConfig
    resource: str
    devices: Devices

    def get_preferred_allocation(
        self, available: Sequence[str], required: Sequence[str], size: int
    ) -> list[str]:
        return get_preferred_allocation(self.devices, available, required, size)

    def get_device_paths(self, ids: Sequence[str]) -> list[str]:
        return self.devices.subset(ids).get_paths()

    def check_health(self, stop: threading.Event, unhealthy: Callable[[Device], None]) -> None:
        """Health checking is not available for a plain resource manager."""
        return None


@dataclass
class NvmlResourceManager(ResourceManager):
    """A resource manager for discrete GPUs driven through the management library."""

    nvml: NvmlLibrary
    policy: AllocationPolicy | None = None

    def get_preferred_allocation(
        self, available: Sequence[str], required: Sequence[str], size: int
    ) -> list[str]:
        return get_preferred_allocation(self.devices, available, required, size, self.policy)

    def get_device_paths(self, ids: Sequence[str]) -> list[str]:
        return [*CONTROL_DEVICE_PATHS, *self.devices.subset(ids).get_paths()]

    def check_health(self, stop: threading.Event, unhealthy: Callable[[Device], None]) -> None:
        check_health(
            self.nvml,
            self.devices,
            stop,
            unhealthy,
            self.config.flags.fail_on_init_error,
        )


@dataclass
class TegraResourceManager(ResourceManager):
    """A resource manager for the integrated GPU of a Tegra system."""

    def get_preferred_allocation(
        self, available: Sequence[str], required: Sequence[str], size: int
    ) -> list[str]:
        return distributed_alloc(self.devices, available, required, size)

    def get_device_paths(self, ids: Sequence[str]) -> list[str]:
        return []

    def check_health(self, stop: threading.Event, unhealthy: Callable[[Device], None]) -> None:
        """Health checks are disabled for Tegra devices."""
        return None


def _shutdown(nvml: NvmlLibrary, level: int = logging.INFO) -> None:
    try:
        nvml.shutdown()
    except NvmlError as exc:
        log.log(level, "Error shutting down NVML: %s", exc)


def new_nvml_resource_managers(
    nvml: NvmlLibrary, device_lib: DeviceLib, config: DeviceConfig, is_wsl: bool = False
) -> list[NvmlResourceManager]:
    """Return one manager for each non-empty resource found through the library."""
    try:
        nvml.init()
    except NvmlError as exc:
        raise ResourceManagerError(f"failed to initialize NVML: {exc}") from exc
    try:
        try:
            device_map = new_device_map(device_lib, config, is_wsl)
        except Exception as exc:
            raise ResourceManagerError(f"error building device map: {exc}") from exc
    finally:
        _shutdown(nvml)

    return [
        NvmlResourceManager(config=config, resource=name, devices=devices, nvml=nvml)
        for name, devices in device_map.items()
        if devices
    ]


def new_tegra_resource_managers(config: DeviceConfig) -> list[TegraResourceManager]:
    """Return one manager for each non-empty Tegra resource."""
    try:
        device_map: DeviceMap = build_tegra_device_map(config)
    except Exception as exc:
        raise ResourceManagerError(f"error building Tegra device map: {exc}") from exc
    try:
        device_map = update_device_map_with_replicas(config, device_map)
    except Exception as exc:
        raise ResourceManagerError(
            "error updating device map with replicas from "
            f"config.sharing.timeSlicing.resources: {exc}"
        ) from exc

    return [
        TegraResourceManager(config=config, resource=name, devices=devices)
        for name, devices in device_map.items()
        if devices
    ]


def _detect(check: Callable[[], tuple[bool, str]], tag: str) -> bool:
    result, reason = check()
    if not result:
        tag = "non-" + tag
    log.info("Detected %s platform: %s", tag, reason)
    return result


def new_resource_managers(
    nvml: NvmlLibrary, device_lib: DeviceLib, platform: PlatformInfo, config: DeviceConfig
) -> list[ResourceManager]:
    """Return the resource managers suited to the detected platform."""
    has_nvml = _detect(platform.has_nvml, "NVML")
    is_tegra = _detect(platform.is_tegra_system, "Tegra")

    if not has_nvml and not is_tegra:
        log.error("Incompatible platform detected")
        log.error("If this is a GPU node, did you configure the NVIDIA Container Toolkit?")
        log.error(
            "If this is not a GPU node, you should set up a toleration or nodeSelector "
            "to only deploy this plugin on GPU nodes"
        )
        if config.flags.fail_on_init_error:
            raise ResourceManagerError("platform detection failed")
        return []

    # Integrated and discrete GPUs on the same node are not supported together.
    if has_nvml and is_tegra:
        log.warning("Disabling Tegra-based resources on NVML system")
        is_tegra = False

    managers: list[ResourceManager] = []
    if has_nvml:
        is_wsl, _ = platform.has_dxcore()
        try:
            managers.extend(new_nvml_resource_managers(nvml, device_lib, config, is_wsl))
        except ResourceManagerError as exc:
            raise ResourceManagerError(
                f"failed to construct NVML resource managers: {exc}"
            ) from exc
    if is_tegra:
        try:
            managers.extend(new_tegra_resource_managers(config))
        except ResourceManagerError as exc:
            raise ResourceManagerError(
                f"failed to construct Tegra resource managers: {exc}"
            ) from exc
    return managers


def add_default_resources_to_config(
    config: DeviceConfig,
    platform: PlatformInfo | None = None,
    nvml: NvmlLibrary | None = None,
    device_lib: DeviceLib | None = None,
) -> None:
    """Add the default GPU and MIG resource patterns to ``config``."""
    config.resources.gpus.append(Resource(pattern="*", name=config.resource_name))
    log.info("config=%s", config.resources.gpus)

    strategy = config.flags.mig_strategy
    if strategy == MigStrategy.SINGLE:
        config.resources.add_mig_resource("*", "gpu")
        return
    if strategy != MigStrategy.MIXED:
        return

    if platform is None or nvml is None or device_lib is None:
        raise ValueError("mig-strategy=mixed needs platform, nvml and device_lib")

    has_nvml, reason = platform.has_nvml()
    if not has_nvml:
        log.warning("mig-strategy=%r is only supported with NVML", MigStrategy.MIXED.value)
        log.warning("NVML not detected: %s", reason)
        return

    try:
        nvml.init()
    except NvmlError as exc:
        if config.flags.fail_on_init_error:
            raise ResourceManagerError(f"failed to initialize NVML: {exc}") from exc
        return

    def visit(profile) -> None:
        if profile.c != profile.g:
            return
        name = str(profile)
        config.resources.add_mig_resource(name, ("mig-" + name).replace("+", "."))

    try:
        device_lib.visit_mig_profiles(visit)
    finally:
        _shutdown(nvml, logging.ERROR)