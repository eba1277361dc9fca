"""Health checking of devices through library event notifications."""

from __future__ import annotations

import logging
import os
import re
import threading
from typing import Callable, Mapping

from .devices import Device, Devices
from .nvml import (
    EVENT_TYPE_DOUBLE_BIT_ECC_ERROR,
    EVENT_TYPE_SINGLE_BIT_ECC_ERROR,
    EVENT_TYPE_XID_CRITICAL_ERROR,
    NO_INSTANCE_ID,
    NvmlError,
    NvmlLibrary,
    Return,
)

log = logging.getLogger(__name__)

# Set to "all" or containing "xids" to disable health checks entirely;
# otherwise a comma-separated list of additional Xids to ignore.
ENV_DISABLE_HEALTH_CHECKS = "DP_DISABLE_HEALTHCHECKS"
ALL_HEALTH_CHECKS = "xids"

MAX_SUCCESSIVE_EVENT_ERROR_COUNT = 3
EVENT_WAIT_TIMEOUT_MS = 5000

# Application errors: the GPU should still be healthy.
APPLICATION_ERROR_XIDS = (
    13,  # Graphics Engine Exception
    31,  # GPU memory page fault
    43,  # GPU stopped processing
    45,  # Preemptive cleanup, due to previous errors
    68,  # Video processor exception
)

_UINT_RE = re.compile(r"[0-9]+")
_INT_RE = re.compile(r"[+-]?[0-9]+")
_UINT64_LIMIT = 1 << 64


class HealthCheckError(Exception):
    """Health checking could not be set up."""


class DevicePlacementError(ValueError):
    """The placement of a device could not be determined."""


def get_additional_xids(value: str) -> list[int]:
    """Parse a comma-separated list of Xids, ignoring malformed entries."""
    xids: list[int] = []
    if not value:
        return xids
    for item in value.split(","):
        trimmed = item.strip()
        if not trimmed:
            continue
        if not _UINT_RE.fullmatch(trimmed) or int(trimmed) >= _UINT64_LIMIT:
            log.info("Ignoring malformed Xid value %s", trimmed)
            continue
        xids.append(int(trimmed))
    return xids


def parse_mig_device_uuid(uuid: str) -> tuple[str, int, int]:
    """Split a MIG device UUID into (parent UUID, GI, CI)."""
    error = DevicePlacementError("unable to parse UUID as MIG device")
    prefix, sep, rest = uuid.partition("-")
    if not sep or prefix != "MIG":
        raise error
    tokens = rest.split("/", 2)
    if len(tokens) != 3 or not tokens[0].startswith("GPU-"):
        raise error
    parent, gi, ci = tokens
    if not _INT_RE.fullmatch(gi) or not _INT_RE.fullmatch(ci):
        raise error
    return parent, int(gi), int(ci)


def get_mig_device_parts(nvml: NvmlLibrary, device: Device) -> tuple[str, int, int]:
    """Return the parent UUID, GI and CI of a MIG device."""
    if not device.is_mig_device():
        raise DevicePlacementError("cannot get GI and CI of full device")
    uuid = device.get_uuid()
    try:
        mig = nvml.device_get_handle_by_uuid(uuid)
    except NvmlError:
        # Older drivers cannot look up MIG devices by UUID.
        return parse_mig_device_uuid(uuid)
    try:
        parent = mig.get_device_handle_from_mig_device_handle()
    except NvmlError as exc:
        raise DevicePlacementError(f"failed to get parent device handle: {exc}") from exc
    try:
        parent_uuid = parent.get_uuid()
    except NvmlError as exc:
        raise DevicePlacementError(f"failed to get parent uuid: {exc}") from exc
    try:
        gi = mig.get_gpu_instance_id()
    except NvmlError as exc:
        raise DevicePlacementError(f"failed to get GPU Instance ID: {exc}") from exc
    try:
        ci = mig.get_compute_instance_id()
    except NvmlError as exc:
        raise DevicePlacementError(f"failed to get Compute Instance ID: {exc}") from exc
    return parent_uuid, gi, ci


def get_device_placement(nvml: NvmlLibrary, device: Device) -> tuple[str, int, int]:
    """Return (parent UUID, GI, CI); full devices use NO_INSTANCE_ID for GI and CI."""
    if not device.is_mig_device():
        return device.get_uuid(), NO_INSTANCE_ID, NO_INSTANCE_ID
    return get_mig_device_parts(nvml, device)


def check_health(
    nvml: NvmlLibrary,
    devices: Devices,
    stop: threading.Event,
    unhealthy: Callable[[Device], None],
    fail_on_init_error: bool = True,
    environ: Mapping[str, str] | None = None,
) -> None:
    """Watch device events until ``stop`` is set, reporting unhealthy devices."""
    env = os.environ if environ is None else environ
    disabled = env.get(ENV_DISABLE_HEALTH_CHECKS, "").lower()
    if disabled == "all":
        disabled = ALL_HEALTH_CHECKS
    if ALL_HEALTH_CHECKS in disabled:
        return

    try:
        nvml.init()
    except NvmlError as exc:
        if fail_on_init_error:
            raise HealthCheckError(f"failed to initialize NVML: {exc}") from exc
        return

    try:
        _watch(nvml, devices, stop, unhealthy, disabled)
    finally:
        try:
            nvml.shutdown()
        except NvmlError as exc:
            log.info("Error shutting down NVML: %s", exc)


def _watch(
    nvml: NvmlLibrary,
    devices: Devices,
    stop: threading.Event,
    unhealthy: Callable[[Device], None],
    disabled: str,
) -> None:
    skipped = set(APPLICATION_ERROR_XIDS) | set(get_additional_xids(disabled))

    try:
        event_set = nvml.event_set_create()
    except NvmlError as exc:
        raise HealthCheckError(f"failed to create event set: {exc}") from exc

    try:
        parent_to_device: dict[str, Device] = {}
        placements: dict[str, tuple[int, int]] = {}
        event_mask = (
            EVENT_TYPE_XID_CRITICAL_ERROR
            | EVENT_TYPE_DOUBLE_BIT_ECC_ERROR
            | EVENT_TYPE_SINGLE_BIT_ECC_ERROR
        )

        for d in devices.values():
            try:
                uuid, gi, ci = get_device_placement(nvml, d)
            except Exception as exc:
                log.warning(
                    "Could not determine device placement for %s: %s; Marking it unhealthy.",
                    d.id,
                    exc,
                )
                unhealthy(d)
                continue
            placements[d.id] = (gi, ci)
            parent_to_device[uuid] = d

            try:
                gpu = nvml.device_get_handle_by_uuid(uuid)
            except NvmlError as exc:
                log.info("unable to get device handle from UUID: %s; marking it as unhealthy", exc)
                unhealthy(d)
                continue
            try:
                supported = gpu.get_supported_event_types()
            except NvmlError as exc:
                log.info(
                    "Unable to determine the supported events for %s: %s; marking it as unhealthy",
                    d.id,
                    exc,
                )
                unhealthy(d)
                continue
            try:
                gpu.register_events(event_mask & supported, event_set)
            except NvmlError as exc:
                if exc.ret == Return.ERROR_NOT_SUPPORTED:
                    log.warning("Device %s is too old to support healthchecking.", d.id)
                log.info("Marking device %s as unhealthy: %s", d.id, exc)
                unhealthy(d)

        while not stop.is_set():
            try:
                event = event_set.wait(EVENT_WAIT_TIMEOUT_MS)
            except NvmlError as exc:
                if exc.ret == Return.ERROR_TIMEOUT:
                    continue
                log.info("Error waiting for event: %s; Marking all devices as unhealthy", exc)
                for d in devices.values():
                    unhealthy(d)
                continue

            if event.event_type != EVENT_TYPE_XID_CRITICAL_ERROR:
                log.info("Skipping non-nvmlEventTypeXidCriticalError event: %s", event)
                continue
            if event.event_data in skipped:
                log.info("Skipping event %s", event)
                continue

            log.info("Processing event %s", event)
            try:
                event_uuid = event.device.get_uuid()
            except NvmlError as exc:
                log.info(
                    "Failed to determine uuid for event %s: %s; Marking all devices as unhealthy.",
                    event,
                    exc,
                )
                for d in devices.values():
                    unhealthy(d)
                continue

            d = parent_to_device.get(event_uuid)
            if d is None:
                log.info("Ignoring event for unexpected device: %s", event_uuid)
                continue

            if (
                d.is_mig_device()
                and event.gpu_instance_id != NO_INSTANCE_ID
                and event.compute_instance_id != NO_INSTANCE_ID
            ):
                gi, ci = placements[d.id]
                if (gi & 0xFFFFFFFF, ci & 0xFFFFFFFF) != (
                    event.gpu_instance_id,
                    event.compute_instance_id,
                ):
                    continue
                log.info("Event for mig device %s (gi=%s, ci=%s)", d.id, gi, ci)

            log.info(
                "XidCriticalError: Xid=%d on Device=%s; marking device as unhealthy.",
                event.event_data,
                d.id,
            )
            unhealthy(d)
    finally:
        event_set.free()