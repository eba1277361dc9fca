"""Plugin managers: choose how devices are discovered and build the plugins."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from .cdi import CdiHandler, NullCdiHandler
from .config import DeviceConfig
from .nvml import DeviceLib, NvmlError, NvmlLibrary, PlatformInfo
from .resource_manager import (
    ResourceManagerError,
    new_nvml_resource_managers,
    new_tegra_resource_managers,
)
from .server import NvidiaDevicePlugin

log = logging.getLogger(__name__)


class ManagerError(Exception):
    """A plugin manager could not be created or could not build its plugins."""


class Mode(str, enum.Enum):
    """How devices of the node are discovered."""

    NVML = "nvml"
    TEGRA = "tegra"
    NULL = "null"


@dataclass
class NullManager:
    """A manager that offers no plugins."""

    cdi_handler: NullCdiHandler = field(default_factory=NullCdiHandler)

    def get_plugins(self) -> list[NvidiaDevicePlugin]:
        return []

    def create_cdi_spec_file(self) -> None:
        """Forward to the null CDI handler, which writes nothing."""
        self.cdi_handler.create_spec_file()


@dataclass
class NvmlManager:
    """Builds plugins for discrete GPUs found through the management library."""

    config: DeviceConfig
    nvml: NvmlLibrary
    device_lib: DeviceLib
    cdi_handler: CdiHandler = field(default_factory=NullCdiHandler)
    cdi_enabled: bool = False
    is_wsl: bool = False
    mig_strategy: str = ""

    def get_plugins(self) -> list[NvidiaDevicePlugin]:
        try:
            managers = new_nvml_resource_managers(
                self.nvml, self.device_lib, self.config, self.is_wsl
            )
        except ResourceManagerError as exc:
            raise ManagerError(f"failed to construct NVML resource managers: {exc}") from exc
        return [
            NvidiaDevicePlugin(self.config, rm, self.cdi_handler, self.cdi_enabled)
            for rm in managers
        ]

    def create_cdi_spec_file(self) -> None:
        self.cdi_handler.create_spec_file()


@dataclass
class TegraManager:
    """Builds plugins for the integrated GPU of a Tegra system."""

    config: DeviceConfig
    cdi_handler: CdiHandler = field(default_factory=NullCdiHandler)
    cdi_enabled: bool = False
    mig_strategy: str = ""
    _spec_handler: NullCdiHandler = field(
        default_factory=NullCdiHandler, init=False, repr=False, compare=False
    )

    def get_plugins(self) -> list[NvidiaDevicePlugin]:
        try:
            managers = new_tegra_resource_managers(self.config)
        except ResourceManagerError as exc:
            raise ManagerError(f"failed to construct NVML resource managers: {exc}") from exc
        return [
            NvidiaDevicePlugin(self.config, rm, self.cdi_handler, self.cdi_enabled)
            for rm in managers
        ]

    def create_cdi_spec_file(self) -> None:
        """CDI specs are not generated for Tegra systems."""
        self._spec_handler.create_spec_file()


def _detect(check, tag: str) -> bool:
    result, reason = check()
    if not result:
        tag = "non-" + tag
    log.info("Detected %s platform: %s", tag, reason)
    return result


def resolve_mode(platform: PlatformInfo, fail_on_init_error: bool = False) -> Mode:
    """Pick the discovery mode for the detected platform."""
    has_nvml = _detect(platform.has_nvml, "NVML")
    is_tegra = _detect(platform.is_tegra_system, "Tegra")

    if not has_nvml and not is_tegra:
        log.error("Incompatible platform detected")
        log.error("If this is a GPU node, did you configure the NVIDIA Container Toolkit?")
        log.error(
            "If this is not a GPU node, you should set up a toleration or nodeSelector "
            "to only deploy this plugin on GPU nodes"
        )
        if fail_on_init_error:
            raise ManagerError("platform detection failed")
        return Mode.NULL

    # Integrated and discrete GPUs on the same node are not supported together.
    if is_tegra:
        if has_nvml:
            log.warning("Disabling Tegra-based resources on NVML system")
            return Mode.NVML
        return Mode.TEGRA
    return Mode.NVML


def new_manager(
    config: DeviceConfig | None,
    platform: PlatformInfo | None = None,
    nvml: NvmlLibrary | None = None,
    device_lib: DeviceLib | None = None,
    cdi_handler: CdiHandler | None = None,
    cdi_enabled: bool = False,
    fail_on_init_error: bool = False,
    mig_strategy: str = "",
):
    """Create the plugin manager suited to the platform."""
    if config is None:
        log.warning("no config provided, returning a null manager")
        return NullManager()
    if platform is None:
        raise ValueError("platform information is required")
    handler = cdi_handler if cdi_handler is not None else NullCdiHandler()

    mode = resolve_mode(platform, fail_on_init_error)
    if mode != Mode.NVML and cdi_enabled:
        log.warning("CDI is not supported; disabling CDI.")
        cdi_enabled = False

    if mode == Mode.NULL:
        return NullManager()
    if mode == Mode.TEGRA:
        return TegraManager(config, handler, cdi_enabled, mig_strategy)

    if nvml is None or device_lib is None:
        raise ValueError("nvml and device_lib are required on an NVML platform")
    try:
        nvml.init()
    except NvmlError as exc:
        log.error("Failed to initialize NVML: %s.", exc)
        log.error("If this is a GPU node, did you set the docker default runtime to `nvidia`?")
        if fail_on_init_error:
            raise ManagerError(f"nvml init failed: {exc}") from exc
        log.warning("nvml init failed: %s", exc)
        return NullManager()
    try:
        is_wsl, _ = platform.has_dxcore()
        return NvmlManager(
            config=config,
            nvml=nvml,
            device_lib=device_lib,
            cdi_handler=handler,
            cdi_enabled=cdi_enabled,
            is_wsl=is_wsl,
            mig_strategy=mig_strategy,
        )
    finally:
        try:
            nvml.shutdown()
        except NvmlError as exc:
            log.info("Error shutting down NVML: %s", exc)