"""Mapping of MIG capability files to their device nodes."""

from __future__ import annotations

import logging
import re

log = logging.getLogger(__name__)

NVIDIA_PROC_DRIVER_PATH = "/proc/driver/nvidia"
NVIDIA_CAPABILITIES_PATH = NVIDIA_PROC_DRIVER_PATH + "/capabilities"

NVCAPS_PROC_DRIVER_PATH = "/proc/driver/nvidia-caps"
NVCAPS_MIG_MINORS_PATH = NVCAPS_PROC_DRIVER_PATH + "/mig-minors"
NVCAPS_DEVICE_PATH = "/dev/nvidia-caps"

_INT = r"([+-]?\d+)"
_CI_ACCESS = re.compile(rf"gpu{_INT}/gi{_INT}/ci{_INT}/access\s*{_INT}")
_GI_ACCESS = re.compile(rf"gpu{_INT}/gi{_INT}/access\s*{_INT}")
_CONFIG = re.compile(rf"config\s*{_INT}")
_MONITOR = re.compile(rf"monitor\s*{_INT}")


def parse_mig_minors_line(line: str) -> tuple[str, int]:
    """Parse one line of the MIG minors file into (capability path, minor)."""
    if m := _CI_ACCESS.match(line):
        gpu, gi, ci, minor = map(int, m.groups())
        return f"{NVIDIA_CAPABILITIES_PATH}/gpu{gpu}/mig/gi{gi}/ci{ci}/access", minor
    if m := _GI_ACCESS.match(line):
        gpu, gi, minor = map(int, m.groups())
        return f"{NVIDIA_CAPABILITIES_PATH}/gpu{gpu}/mig/gi{gi}/access", minor
    if m := _CONFIG.match(line):
        return f"{NVIDIA_CAPABILITIES_PATH}/mig/config", int(m.group(1))
    if m := _MONITOR.match(line):
        return f"{NVIDIA_CAPABILITIES_PATH}/mig/monitor", int(m.group(1))
    raise ValueError(f"unparsable line: {line}")


def get_mig_capability_device_paths(minors_path: str = NVCAPS_MIG_MINORS_PATH) -> dict[str, str]:
    """Map each MIG capability path to its device node path.

    An absent minors file means the machine is not MIG capable, giving an
    empty mapping.
    """
    try:
        minors_file = open(minors_path, encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise OSError(f"error opening MIG minors file: {exc}") from exc

    paths: dict[str, str] = {}
    with minors_file:
        for raw in minors_file:
            line = raw.rstrip("\n").rstrip("\r")
            try:
                cap_path, minor = parse_mig_minors_line(line)
            except ValueError as exc:
                log.error("Skipping line in MIG minors file: %s", exc)
                continue
            paths[cap_path] = f"{NVCAPS_DEVICE_PATH}/nvidia-cap{minor}"
    return paths