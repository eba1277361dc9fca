"""Device plugin responses for the kubelet: allocation, CDI and device specs."""

from __future__ import annotations

import logging
import os
import posixpath
import re
import uuid
from dataclasses import dataclass, field
from typing import Sequence

from .cdi import CdiError, CdiHandler, NullCdiHandler, update_annotations
from .config import (
    DEFAULT_CDI_ANNOTATION_PREFIX,
    DEVICE_LIST_STRATEGY_CDI_ANNOTATIONS,
    DeviceConfig,
    DeviceIDStrategy,
    DeviceListStrategies,
    new_device_list_strategies,
)
from .devices import Devices, PluginDevice, strip_annotations

log = logging.getLogger(__name__)

DEVICE_PLUGIN_PATH = "/var/lib/kubelet/device-plugins/"
KUBELET_SOCKET = DEVICE_PLUGIN_PATH + "kubelet.sock"
DEVICE_LIST_ENVVAR = "NVIDIA_VISIBLE_DEVICES"
NODE_LOCK_NVIDIA = "hami.io/mutex.lock"
CDI_PLUGIN_NAME = "nvidia-device-plugin"

DEVICE_LIST_AS_VOLUME_MOUNTS_HOST_PATH = "/dev/null"
DEVICE_LIST_AS_VOLUME_MOUNTS_CONTAINER_PATH_ROOT = "/var/run/nvidia-container-devices"

OPTIONAL_DEVICE_PATHS = frozenset(
    {
        "/dev/nvidiactl",
        "/dev/nvidia-uvm",
        "/dev/nvidia-uvm-tools",
        "/dev/nvidia-modeset",
    }
)


class AllocationResponseError(Exception):
    """An allocation response could not be built."""


@dataclass(frozen=True)
class Mount:
    """A host path mounted into a container."""

    container_path: str
    host_path: str
    read_only: bool = False


@dataclass(frozen=True)
class DeviceSpec:
    """A device node made available to a container."""

    container_path: str
    host_path: str
    permissions: str = "rw"


@dataclass
class ContainerAllocateResponse:
    """What the runtime needs to give a container its devices."""

    envs: dict[str, str] = field(default_factory=dict)
    mounts: list[Mount] = field(default_factory=list)
    devices: list[DeviceSpec] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DevicePluginOptions:
    """Optional features the plugin offers to the kubelet."""

    get_preferred_allocation_available: bool = False
    pre_start_required: bool = False


def _join_path(*parts: str) -> str:
    joined = "/".join(p for p in parts if p)
    if not joined:
        return ""
    return posixpath.normpath(re.sub("/+", "/", joined))


def _container_requests(request) -> list:
    if request is None:
        return []
    containers = getattr(request, "container_requests", request)
    return list(containers or [])


def container_cache_directory(hook_path: str, pod_uid: str, container_name: str) -> str:
    """Host directory holding the shared cache of one container."""
    return f"{hook_path}/vgpu/containers/{pod_uid}_{container_name}"


class NvidiaDevicePlugin:
    """Serves one resource of a resource manager to the kubelet."""

    def __init__(
        self,
        config: DeviceConfig,
        resource_manager,
        cdi_handler: CdiHandler | None = None,
        cdi_enabled: bool = False,
    ) -> None:
        self.rm = resource_manager
        self.config = config
        self.device_list_envvar = DEVICE_LIST_ENVVAR
        try:
            self.device_list_strategies = new_device_list_strategies(
                config.flags.device_list_strategy
            )
        except ValueError:
            self.device_list_strategies = DeviceListStrategies()
        prefix, sep, name = resource_manager.resource.partition("/")
        if not sep:
            name = prefix
        self.socket = f"{DEVICE_PLUGIN_PATH}nvidia-{name}.sock"
        self.cdi_handler = cdi_handler if cdi_handler is not None else NullCdiHandler()
        self.cdi_enabled = cdi_enabled
        self.cdi_annotation_prefix = config.flags.cdi_annotation_prefix

    def devices(self) -> Devices:
        """The full set of devices associated with the plugin."""
        return self.rm.devices

    def get_device_plugin_options(self) -> DevicePluginOptions:
        return DevicePluginOptions(get_preferred_allocation_available=True)

    def get_preferred_allocation(self, request) -> list[list[str]]:
        """No preference is given: the response holds no container entries."""
        containers = _container_requests(request)
        log.debug(
            "no preferred allocation offered for %d container request(s) of '%s'",
            len(containers),
            self.rm.resource,
        )
        return []

    def pre_start_container(self, request) -> dict:
        """Nothing needs to happen before a container starts."""
        log.debug("pre-start for '%s' needs no action: %r", self.rm.resource, request)
        return {}

    def get_allocate_response(self, request_ids: Sequence[str]) -> ContainerAllocateResponse:
        """Build the response for a container requesting ``request_ids``."""
        device_ids = self.device_ids_from_annotated_device_ids(request_ids)
        response_id = str(uuid.uuid4())
        try:
            response = self.get_allocate_response_for_cdi(response_id, device_ids)
        except CdiError as exc:
            raise AllocationResponseError(
                f"failed to get allocate response for CDI: {exc}"
            ) from exc

        flags = self.config.flags
        response.envs = self.api_envs(self.device_list_envvar, device_ids)
        if flags.pass_device_specs:
            response.devices = self.api_device_specs(flags.nvidia_driver_root, request_ids)
        if flags.gds_enabled:
            response.envs["NVIDIA_GDS"] = "enabled"
        if flags.mofed_enabled:
            response.envs["NVIDIA_MOFED"] = "enabled"
        return response

    def get_allocate_response_for_cdi(
        self, response_id: str, device_ids: Sequence[str] | None
    ) -> ContainerAllocateResponse:
        """Response carrying the annotations that trigger CDI injection."""
        response = ContainerAllocateResponse()
        if not self.cdi_enabled:
            return response

        devices = [self.cdi_handler.qualified_name("gpu", i) for i in device_ids or []]
        if self.config.flags.gds_enabled:
            devices.append(self.cdi_handler.qualified_name("gds", "all"))
        if self.config.flags.mofed_enabled:
            devices.append(self.cdi_handler.qualified_name("mofed", "all"))

        if not devices:
            return response

        if self.device_list_strategies.includes(DEVICE_LIST_STRATEGY_CDI_ANNOTATIONS):
            response.annotations = self.get_cdi_device_annotations(response_id, devices)
        return response

    def get_cdi_device_annotations(
        self, response_id: str, devices: Sequence[str]
    ) -> dict[str, str]:
        try:
            annotations = update_annotations({}, CDI_PLUGIN_NAME, response_id, devices)
        except CdiError as exc:
            raise CdiError(f"failed to add CDI annotations: {exc}") from exc

        if self.cdi_annotation_prefix == DEFAULT_CDI_ANNOTATION_PREFIX:
            return annotations

        return {
            self.cdi_annotation_prefix + key.removeprefix(DEFAULT_CDI_ANNOTATION_PREFIX): value
            for key, value in annotations.items()
        }

    def device_ids_from_annotated_device_ids(self, ids: Sequence[str]) -> list[str]:
        strategy = self.config.flags.device_id_strategy
        if strategy == DeviceIDStrategy.UUID:
            return strip_annotations(ids)
        if strategy == DeviceIDStrategy.INDEX:
            return self.rm.devices.subset(ids).get_indices()
        return []

    def api_devices(self) -> list[PluginDevice]:
        return self.rm.devices.get_plugin_devices(self.config.flags.device_split_count)

    def api_envs(self, envvar: str, device_ids: Sequence[str]) -> dict[str, str]:
        return {envvar: ",".join(device_ids)}

    def api_device_specs(self, driver_root: str, ids: Sequence[str]) -> list[DeviceSpec]:
        """Device nodes for ``ids``; optional control nodes only when present."""
        specs: list[DeviceSpec] = []
        for path in self.rm.get_device_paths(ids):
            if path in OPTIONAL_DEVICE_PATHS and not os.path.exists(path):
                continue
            specs.append(
                DeviceSpec(
                    container_path=path,
                    host_path=_join_path(driver_root, path),
                    permissions="rw",
                )
            )
        return specs