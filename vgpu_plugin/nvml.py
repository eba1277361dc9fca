"""Abstractions over the GPU management library used by the plugin."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

EVENT_TYPE_SINGLE_BIT_ECC_ERROR = 0x1
EVENT_TYPE_DOUBLE_BIT_ECC_ERROR = 0x2
EVENT_TYPE_XID_CRITICAL_ERROR = 0x8

NO_INSTANCE_ID = 0xFFFFFFFF


class Return(enum.IntEnum):
    """Result codes reported by the management library."""

    SUCCESS = 0
    ERROR_UNINITIALIZED = 1
    ERROR_INVALID_ARGUMENT = 2
    ERROR_NOT_SUPPORTED = 3
    ERROR_NO_PERMISSION = 4
    ERROR_ALREADY_INITIALIZED = 5
    ERROR_NOT_FOUND = 6
    ERROR_INSUFFICIENT_SIZE = 7
    ERROR_INSUFFICIENT_POWER = 8
    ERROR_DRIVER_NOT_LOADED = 9
    ERROR_TIMEOUT = 10
    ERROR_IRQ_ISSUE = 11
    ERROR_LIBRARY_NOT_FOUND = 12
    ERROR_FUNCTION_NOT_FOUND = 13
    ERROR_CORRUPTED_INFOROM = 14
    ERROR_GPU_IS_LOST = 15
    ERROR_RESET_REQUIRED = 16
    ERROR_OPERATING_SYSTEM = 17
    ERROR_LIB_RM_VERSION_MISMATCH = 18
    ERROR_IN_USE = 19
    ERROR_MEMORY = 20
    ERROR_NO_DATA = 21
    ERROR_UNKNOWN = 999


class NvmlError(Exception):
    """A library call finished with a result other than SUCCESS."""

    def __init__(self, ret: Return, message: str = "") -> None:
        self.ret = ret
        super().__init__(message or ret.name)


def check(ret) -> None:
    """Raise NvmlError unless ``ret`` is SUCCESS."""
    try:
        code = Return(ret)
    except ValueError:
        code = Return.ERROR_UNKNOWN
    if code is not Return.SUCCESS:
        raise NvmlError(code)


def decode_c_string(raw) -> str:
    """Decode a NUL-terminated byte or int8 sequence into a string."""
    out = bytearray()
    for c in raw:
        if c == 0:
            break
        out.append(c & 0xFF)
    return out.decode("utf-8", "replace")


@dataclass(frozen=True)
class Event:
    """A device event delivered by an event set."""

    event_type: int
    event_data: int
    device: Any = None
    gpu_instance_id: int = NO_INSTANCE_ID
    compute_instance_id: int = NO_INSTANCE_ID


@runtime_checkable
class EventSet(Protocol):
    """A set of registered device events; calls raise NvmlError on failure."""

    def wait(self, timeout_ms: int) -> Event: ...

    def free(self) -> None: ...


@runtime_checkable
class NvmlDevice(Protocol):
    """A GPU or MIG device handle; calls raise NvmlError on failure."""

    def get_uuid(self) -> str: ...

    def get_name(self) -> str: ...

    def get_memory_total(self) -> int: ...

    def get_minor_number(self) -> int: ...

    def get_pci_bus_id(self) -> Iterable[int]: ...

    def get_gpu_instance_id(self) -> int: ...

    def get_compute_instance_id(self) -> int: ...

    def get_device_handle_from_mig_device_handle(self) -> "NvmlDevice": ...

    def get_supported_event_types(self) -> int: ...

    def register_events(self, mask: int, event_set: EventSet) -> None: ...

    def is_mig_enabled(self) -> bool: ...

    def get_mig_devices(self) -> list["NvmlDevice"]: ...

    def get_attributes(self) -> Any: ...

    def get_profile(self) -> Any: ...


@runtime_checkable
class NvmlLibrary(Protocol):
    """Entry points of the management library; calls raise NvmlError on failure."""

    def init(self) -> None: ...

    def shutdown(self) -> None: ...

    def device_get_handle_by_index(self, index: int) -> NvmlDevice: ...

    def device_get_handle_by_uuid(self, uuid: str) -> NvmlDevice: ...

    def event_set_create(self) -> EventSet: ...


@runtime_checkable
class MigProfile(Protocol):
    """A MIG profile with its compute (c) and GPU (g) slice counts."""

    c: int
    g: int

    def __str__(self) -> str: ...


@runtime_checkable
class DeviceLib(Protocol):
    """Walks devices; a visitor stops the walk by raising."""

    def visit_devices(self, visitor: Callable[[int, NvmlDevice], None]) -> None: ...

    def visit_mig_devices(
        self, visitor: Callable[[int, NvmlDevice, int, NvmlDevice], None]
    ) -> None: ...

    def visit_mig_profiles(self, visitor: Callable[[MigProfile], None]) -> None: ...


@runtime_checkable
class PlatformInfo(Protocol):
    """Platform detection; each check returns (result, reason)."""

    def has_nvml(self) -> tuple[bool, str]: ...

    def is_tegra_system(self) -> tuple[bool, str]: ...

    def has_dxcore(self) -> tuple[bool, str]: ...