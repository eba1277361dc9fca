"""Preferred-allocation algorithms over a set of devices."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from .devices import Devices, annotated_base_id, any_has_annotations

AllocationPolicy = Callable[[list[str], list[str], int], Iterable]


class AllocationError(Exception):
    """No allocation satisfying the request could be computed."""


def first_fit_policy(available: list[str], required: list[str], size: int) -> list[str]:
    """Required devices first, then available ones in order, up to ``size``."""
    if size <= 0 or len(required) > size:
        return []
    if any(r not in available for r in required):
        return []
    candidates = [a for a in available if a not in required]
    if len(required) + len(candidates) < size:
        return []
    return list(required) + candidates[: size - len(required)]


def aligned_alloc(
    available: Sequence[str],
    required: Sequence[str],
    size: int,
    policy: AllocationPolicy | None = None,
) -> list[str]:
    """Ask the aligned allocation policy for a preferred set of device UUIDs."""
    chosen = (policy or first_fit_policy)(list(available), list(required), size)
    return [getattr(device, "uuid", device) for device in chosen]


@dataclass
class _ReplicaCount:
    total: int = 0
    available: int = 0

    @property
    def used(self) -> int:
        return self.total - self.available


def distributed_alloc(
    devices: Devices, available: Sequence[str], required: Sequence[str], size: int
) -> list[str]:
    """Pick devices so replicas are spread evenly over the underlying GPUs."""
    candidates = devices.subset(available).difference(devices.subset(required)).get_ids()
    needed = size - len(required)
    if len(candidates) < needed:
        raise AllocationError("not enough available devices to satisfy allocation")

    replicas: dict[str, _ReplicaCount] = {}
    for c in candidates:
        replicas.setdefault(annotated_base_id(c), _ReplicaCount()).available += 1
    for device_id in devices:
        count = replicas.get(annotated_base_id(device_id))
        if count is not None:
            count.total += 1

    chosen: list[str] = []
    for _ in range(needed):
        candidates.sort(key=lambda c: replicas[annotated_base_id(c)].used)
        pick = candidates.pop(0)
        replicas[annotated_base_id(pick)].available -= 1
        chosen.append(pick)

    return list(required) + chosen


def get_preferred_allocation(
    devices: Devices,
    available: Sequence[str],
    required: Sequence[str],
    size: int,
    policy: AllocationPolicy | None = None,
) -> list[str]:
    """Aligned allocation over full GPUs, distributed allocation over replicas."""
    if devices.aligned_allocation_supported() and not any_has_annotations(available):
        return aligned_alloc(available, required, size, policy)
    return distributed_alloc(devices, available, required, size)