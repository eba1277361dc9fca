"""Devices managed by a resource manager, and replica-annotated IDs."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Protocol, runtime_checkable

HEALTHY = "Healthy"
UNHEALTHY = "Unhealthy"
WSL_DEVICE_PATH = "/dev/dxg"

_SEPARATOR = "::"
_REPLICA_RE = re.compile(r"[+-]?\d+")


class DeviceError(Exception):
    """A device could not be built from its information source."""


@runtime_checkable
class DeviceInfo(Protocol):
    """What is needed to build a Device."""

    def get_uuid(self) -> str: ...

    def get_paths(self) -> list[str]: ...

    def get_numa_node(self) -> tuple[bool, int]: ...


@dataclass(frozen=True)
class PluginDevice:
    """A device as advertised to the kubelet."""

    id: str
    health: str = HEALTHY
    numa_node: int | None = None


@dataclass
class Device:
    """A device with its node paths and index."""

    id: str
    health: str = HEALTHY
    numa_node: int | None = None
    paths: list[str] = field(default_factory=list)
    index: str = ""

    def plugin_device(self) -> PluginDevice:
        return PluginDevice(self.id, self.health, self.numa_node)

    def aligned_allocation_supported(self) -> bool:
        if self.is_mig_device():
            return False
        return WSL_DEVICE_PATH not in self.paths

    def is_mig_device(self) -> bool:
        return ":" in self.index

    def get_uuid(self) -> str:
        return annotated_base_id(self.id)


class Devices(dict):
    """Devices keyed by ID."""

    def contains(self, *args: str) -> bool:
        return all(device_id in self for device_id in args)

    def get_by_id(self, device_id: str) -> Device | None:
        return self.get(device_id)

    def get_by_index(self, index: str) -> Device | None:
        return next((d for d in self.values() if d.index == index), None)

    def subset(self, ids: Iterable[str]) -> "Devices":
        return Devices({i: self[i] for i in ids if i in self})

    def difference(self, other: "Devices") -> "Devices":
        return Devices({i: d for i, d in self.items() if i not in other})

    def get_ids(self) -> list[str]:
        return [d.id for d in self.values()]

    def get_plugin_devices(self, split_count: int) -> list[PluginDevice]:
        """Advertised devices: each full GPU is split into ``split_count`` slots."""
        if not self:
            return []
        first_id = next(iter(self.values())).id
        if "MIG" not in first_id:
            return [
                PluginDevice(f"{d.id}-{i}", d.health, None)
                for d in self.values()
                for i in range(split_count)
            ]
        return [d.plugin_device() for d in self.values()]

    def get_indices(self) -> list[str]:
        return [d.index for d in self.values()]

    def get_paths(self) -> list[str]:
        return [p for d in self.values() for p in d.paths]

    def aligned_allocation_supported(self) -> bool:
        return all(d.aligned_allocation_supported() for d in self.values())


def build_device(index: str, info: DeviceInfo) -> Device:
    """Build a healthy Device from its information source."""
    try:
        uuid = info.get_uuid()
    except Exception as exc:
        raise DeviceError(f"error getting UUID device: {exc}") from exc
    try:
        paths = info.get_paths()
    except Exception as exc:
        raise DeviceError(f"error getting device paths: {exc}") from exc
    try:
        has_numa, numa = info.get_numa_node()
    except Exception as exc:
        raise DeviceError(f"error getting device NUMA node: {exc}") from exc
    return Device(
        id=uuid,
        health=HEALTHY,
        numa_node=numa if has_numa else None,
        paths=list(paths or []),
        index=index,
    )


def new_annotated_id(device_id: str, replica: int) -> str:
    return f"{device_id}{_SEPARATOR}{replica}"


def has_annotations(annotated_id: str) -> bool:
    return _SEPARATOR in annotated_id


def split_annotated_id(annotated_id: str) -> tuple[str, int]:
    """Split an annotated ID into its ID and replica number."""
    base, sep, replica = annotated_id.partition(_SEPARATOR)
    if not sep:
        return annotated_id, 0
    return base, int(replica) if _REPLICA_RE.fullmatch(replica) else 0


def annotated_base_id(annotated_id: str) -> str:
    return split_annotated_id(annotated_id)[0]


def any_has_annotations(ids: Iterable[str]) -> bool:
    return any(has_annotations(i) for i in ids)


def strip_annotations(ids: Iterable[str]) -> list[str]:
    return [annotated_base_id(i) for i in ids]