"""Collecting the devices a node reports for scheduling, with their NUMA placement."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Callable, Iterable

from .nvml import NvmlError, NvmlLibrary

log = logging.getLogger(__name__)

NUMA_AFFINITY_HEADER = "NUMA Affinity"
TOPOLOGY_COMMAND = ("nvidia-smi", "topo", "-m")

_INT_RE = re.compile(r"[+-]?\d+")


@dataclass(frozen=True)
class ApiDeviceInfo:
    """A device as registered for the scheduler."""

    id: str
    count: int
    devmem: int
    devcore: int
    type: str
    numa: int
    health: bool


def parse_nvidia_numa_info(idx: int, topology: str) -> int:
    """Return the NUMA affinity of GPU ``idx`` from topology-matrix output.

    A GPU without an established NUMA topology ("N/A") has affinity 0.
    """
    result = 0
    column = 0
    for line_no, line in enumerate(topology.split("\n")):
        if "GPU" not in line:
            continue
        # Values are often separated by two tabs; collapse them to one.
        words = line.replace("\t\t", "\t").split("\t")
        log.debug("parseNumaInfo words=%s", words)
        if line_no == 0:
            for column_index, header in enumerate(words):
                if NUMA_AFFINITY_HEADER in header:
                    column = column_index
            continue
        if str(idx) not in words[0]:
            continue
        if column >= len(words):
            raise ValueError(f"topology row has no NUMA affinity column: {line!r}")
        value = words[column]
        if value == "N/A":
            log.info("current card has not established numa topology: index %d", idx)
            return 0
        if not _INT_RE.fullmatch(value):
            raise ValueError(f"invalid NUMA affinity value: {value!r}")
        result = int(value)
    return result


def get_numa_information(idx: int) -> int:
    """Run the topology query and return the NUMA affinity of GPU ``idx``."""
    completed = subprocess.run(
        list(TOPOLOGY_COMMAND),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        check=True,
    )
    log.debug("topology output: %s", completed.stdout)
    return parse_nvidia_numa_info(idx, completed.stdout)


def collect_api_devices(
    nvml: NvmlLibrary,
    devices,
    split_count: int = 10,
    memory_scaling: float = 1.0,
    cores_scaling: float = 1.0,
    numa_lookup: Callable[[int], int] | None = None,
) -> list[ApiDeviceInfo]:
    """Describe every device of ``devices`` as it is to be registered.

    Library failures while reading a device are raised; a failed NUMA
    lookup is logged and gives NUMA node 0.
    """
    lookup = numa_lookup or get_numa_information
    known: Iterable = list(devices.values())
    nvml.init()

    result: list[ApiDeviceInfo] = []
    for idx in range(len(devices)):
        try:
            handle = nvml.device_get_handle_by_index(idx)
            memory_total = handle.get_memory_total()
            uuid = handle.get_uuid()
            model = handle.get_name()
        except NvmlError as exc:
            log.error("nvml error reading device idx=%d: %s", idx, exc)
            raise

        registered_mem = memory_total // 1024 // 1024
        if memory_scaling != 1:
            registered_mem = int(registered_mem * memory_scaling)
        log.info("MemoryScaling=%s registeredmem=%s", memory_scaling, registered_mem)

        health = True
        for device in known:
            if device.id == uuid:
                health = device.health.lower() == "healthy"
                break

        try:
            numa = lookup(idx)
        except Exception as exc:
            log.error("failed to get numa information for idx %d: %s", idx, exc)
            numa = 0

        result.append(
            ApiDeviceInfo(
                id=uuid,
                count=split_count,
                devmem=registered_mem,
                devcore=int(cores_scaling * 100),
                type=f"NVIDIA-{model}",
                numa=numa,
                health=health,
            )
        )
        log.info(
            "nvml registered device id=%d, memory=%s, type=%s, numa=%s",
            idx + 1,
            registered_mem,
            model,
            numa,
        )
    return result