from collections import Counter
from dataclasses import dataclass

import pytest

from vgpu_plugin.allocate import (
    AllocationError,
    aligned_alloc,
    distributed_alloc,
    first_fit_policy,
    get_preferred_allocation,
)
from vgpu_plugin.devices import Device, Devices, annotated_base_id, new_annotated_id


def _replicated(gpus, replicas):
    devs = Devices()
    for i, gpu in enumerate(gpus):
        for r in range(replicas):
            aid = new_annotated_id(gpu, r)
            devs[aid] = Device(id=aid, index=str(i))
    return devs


def _full(*ids):
    return Devices({d: Device(id=d, index=str(i), paths=[f"/dev/nvidia{i}"])
                    for i, d in enumerate(ids)})


def test_distributed_spreads_over_gpus():
    devs = _replicated(["GPU-a", "GPU-b"], 2)
    result = distributed_alloc(devs, list(devs), [], 2)
    assert len(result) == 2
    assert {annotated_base_id(r) for r in result} == {"GPU-a", "GPU-b"}


def test_distributed_balances_larger_request():
    devs = _replicated(["GPU-a", "GPU-b", "GPU-c"], 4)
    result = distributed_alloc(devs, list(devs), [], 6)
    counts = Counter(annotated_base_id(r) for r in result)
    assert sorted(counts.values()) == [2, 2, 2]
    assert len(set(result)) == 6


def test_distributed_keeps_required_first():
    devs = _replicated(["GPU-a", "GPU-b"], 2)
    required = [new_annotated_id("GPU-a", 0)]
    result = distributed_alloc(devs, list(devs), required, 3)
    assert result[0] == required[0]
    assert len(result) == 3
    assert required[0] not in result[1:]


def test_distributed_prefers_less_used_gpu():
    devs = _replicated(["GPU-a", "GPU-b"], 2)
    available = [new_annotated_id("GPU-a", 1), new_annotated_id("GPU-b", 0),
                 new_annotated_id("GPU-b", 1)]
    result = distributed_alloc(devs, available, [], 1)
    assert annotated_base_id(result[0]) == "GPU-b"


def test_distributed_not_enough_devices():
    devs = _replicated(["GPU-a"], 2)
    with pytest.raises(AllocationError):
        distributed_alloc(devs, list(devs), [], 3)


def test_first_fit_policy():
    assert first_fit_policy(["GPU-a", "GPU-b", "GPU-c"], ["GPU-c"], 2) == ["GPU-c", "GPU-a"]
    assert first_fit_policy(["GPU-a"], ["GPU-b"], 1) == []
    assert first_fit_policy(["GPU-a"], [], 2) == []
    assert first_fit_policy(["GPU-a"], [], 0) == []


@dataclass
class _Allocated:
    uuid: str


def test_aligned_alloc_uses_policy_and_returns_uuids():
    calls = []

    def policy(available, required, size):
        calls.append((available, required, size))
        return [_Allocated(u) for u in reversed(available)][:size]

    result = aligned_alloc(["GPU-a", "GPU-b"], [], 2, policy)
    assert result == ["GPU-b", "GPU-a"]
    assert calls == [(["GPU-a", "GPU-b"], [], 2)]


def test_preferred_allocation_full_gpus_uses_aligned_policy():
    devs = _full("GPU-a", "GPU-b", "GPU-c")
    seen = []

    def policy(available, required, size):
        seen.append(size)
        return available[-size:]

    result = get_preferred_allocation(devs, list(devs), [], 2, policy)
    assert result == ["GPU-b", "GPU-c"]
    assert seen == [2]


def test_preferred_allocation_replicas_uses_distributed():
    devs = _replicated(["GPU-a", "GPU-b"], 2)

    def policy(available, required, size):
        raise AssertionError("aligned policy must not be used")

    result = get_preferred_allocation(devs, list(devs), [], 2, policy)
    assert {annotated_base_id(r) for r in result} == {"GPU-a", "GPU-b"}


def test_preferred_allocation_mig_devices_use_distributed():
    devs = Devices({
        "MIG-1": Device(id="MIG-1", index="0:0"),
        "MIG-2": Device(id="MIG-2", index="0:1"),
    })
    result = get_preferred_allocation(devs, ["MIG-1", "MIG-2"], ["MIG-2"], 2)
    assert result == ["MIG-2", "MIG-1"]