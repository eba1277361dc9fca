"""Container Device Interface handlers and annotation helpers."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Protocol, runtime_checkable

log = logging.getLogger(__name__)

ANNOTATION_PREFIX = "cdi.k8s.io/"
MAX_ANNOTATION_NAME_LEN = 63

_VENDOR_RE = re.compile(r"[A-Za-z](?:[A-Za-z0-9_.-]*[A-Za-z0-9])?")
_CLASS_RE = re.compile(r"[A-Za-z](?:[A-Za-z0-9_-]*[A-Za-z0-9])?")
_DEVICE_NAME_RE = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9_.:-]*[A-Za-z0-9])?")
_ANNOTATION_NAME_RE = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9_.-]*[A-Za-z0-9])?")


class CdiError(ValueError):
    """A CDI name or annotation is invalid."""


@runtime_checkable
class CdiHandler(Protocol):
    """Creates CDI specs and names devices within them."""

    def create_spec_file(self) -> None: ...

    def qualified_name(self, device_class: str, device_id: str) -> str: ...


@dataclass
class NullCdiHandler:
    """A handler for when no CDI specs are required.

    It writes no spec and names no device, but keeps count of what was asked
    of it so that misuse can be seen.
    """

    spec_requests: int = 0
    unnamed: list[tuple[str, str]] = field(default_factory=list)

    def create_spec_file(self) -> None:
        """Record the request; no spec file is written."""
        self.spec_requests += 1
        log.debug("no CDI spec generated by the null handler (request %d)", self.spec_requests)

    def qualified_name(self, device_class: str, device_id: str) -> str:
        """Record the request and return an empty name."""
        self.unnamed.append((device_class, device_id))
        log.error("cannot return a qualified CDI device name with the null CDI handler")
        return ""


def qualified_name(vendor: str, device_class: str, device_id: str) -> str:
    """Return the fully qualified CDI name ``vendor/class=id``."""
    return f"{vendor}/{device_class}={device_id}"


def _parse_qualified_name(device: str) -> tuple[str, str, str]:
    vendor, sep, rest = device.partition("/")
    if not sep:
        raise CdiError(f"unqualified device {device!r}, missing vendor")
    device_class, sep, name = rest.partition("=")
    if not sep:
        raise CdiError(f"unqualified device {device!r}, missing class")
    if not _VENDOR_RE.fullmatch(vendor):
        raise CdiError(f"invalid vendor {vendor!r} in device {device!r}")
    if not _CLASS_RE.fullmatch(device_class):
        raise CdiError(f"invalid class {device_class!r} in device {device!r}")
    if not _DEVICE_NAME_RE.fullmatch(name):
        raise CdiError(f"invalid device name {name!r} in device {device!r}")
    return vendor, device_class, name


def _annotation_key(plugin_name: str, device_id: str) -> str:
    if not plugin_name:
        raise CdiError("invalid plugin name, empty")
    if not device_id:
        raise CdiError("invalid deviceID, empty")
    name = plugin_name + "_" + device_id.replace("/", "_")
    if len(name) > MAX_ANNOTATION_NAME_LEN:
        raise CdiError(f"invalid plugin+deviceID {name!r}, too long")
    if not _ANNOTATION_NAME_RE.fullmatch(name):
        raise CdiError(f"invalid name {name!r}")
    return ANNOTATION_PREFIX + name


def update_annotations(
    annotations: Mapping[str, str] | None,
    plugin_name: str,
    device_id: str,
    devices: Iterable[str],
) -> dict[str, str]:
    """Return a copy of ``annotations`` with the CDI device request added."""
    current = dict(annotations or {})
    try:
        key = _annotation_key(plugin_name, device_id)
    except CdiError as exc:
        raise CdiError(f"CDI annotation failed: {exc}") from exc
    if key in current:
        raise CdiError(f"CDI annotation failed, key {key!r} used")
    devices = list(devices)
    for device in devices:
        try:
            _parse_qualified_name(device)
        except CdiError as exc:
            raise CdiError(f"CDI annotation failed: {exc}") from exc
    current[key] = ",".join(devices)
    return current