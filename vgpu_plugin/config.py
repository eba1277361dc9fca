"""Plugin configuration: flags, resource patterns and time-slicing settings."""

from __future__ import annotations

import enum
import fnmatch
import re
from dataclasses import dataclass, field

DEFAULT_CDI_ANNOTATION_PREFIX = "cdi.k8s.io/"
DEFAULT_RESOURCE_PREFIX = "nvidia.com/"
DEFAULT_RESOURCE_NAME = "nvidia.com/gpu"

DEVICE_LIST_STRATEGY_ENVVAR = "envvar"
DEVICE_LIST_STRATEGY_VOLUME_MOUNTS = "volume-mounts"
DEVICE_LIST_STRATEGY_CDI_ANNOTATIONS = "cdi-annotations"
DEVICE_LIST_STRATEGY_CDI_CRI = "cdi-cri"

VALID_DEVICE_LIST_STRATEGIES = frozenset(
    {
        DEVICE_LIST_STRATEGY_ENVVAR,
        DEVICE_LIST_STRATEGY_VOLUME_MOUNTS,
        DEVICE_LIST_STRATEGY_CDI_ANNOTATIONS,
        DEVICE_LIST_STRATEGY_CDI_CRI,
    }
)

_GPU_INDEX_RE = re.compile(r"\d+")
_MIG_INDEX_RE = re.compile(r"\d+:\d+")


class MigStrategy(str, enum.Enum):
    """How MIG devices are exposed as resources."""

    NONE = "none"
    SINGLE = "single"
    MIXED = "mixed"


class DeviceIDStrategy(str, enum.Enum):
    """How devices are identified towards the container runtime."""

    UUID = "uuid"
    INDEX = "index"


@dataclass(frozen=True)
class DeviceListStrategies:
    """The set of strategies used to pass the device list to containers."""

    strategies: frozenset[str] = frozenset()

    def includes(self, strategy: str) -> bool:
        return strategy in self.strategies


def new_device_list_strategies(names) -> DeviceListStrategies:
    """Validate strategy names and build a DeviceListStrategies."""
    names = list(names)
    if not names:
        raise ValueError("empty device list strategy")
    for name in names:
        if name not in VALID_DEVICE_LIST_STRATEGIES:
            raise ValueError(f"invalid strategy: {name}")
    return DeviceListStrategies(frozenset(names))


def _normalize_resource_name(name: str) -> str:
    if not name:
        raise ValueError("resource name must not be empty")
    if "/" not in name:
        return DEFAULT_RESOURCE_PREFIX + name
    return name


@dataclass(frozen=True)
class Resource:
    """A resource name together with the device-name pattern it applies to."""

    pattern: str
    name: str

    def matches(self, name: str) -> bool:
        return fnmatch.fnmatchcase(name.lower(), self.pattern.lower())


@dataclass
class Resources:
    """Resource patterns for full GPUs and for MIG devices."""

    gpus: list[Resource] = field(default_factory=list)
    migs: list[Resource] = field(default_factory=list)

    @staticmethod
    def _make(pattern: str, name: str) -> Resource:
        if not pattern:
            raise ValueError("resource pattern must not be empty")
        return Resource(pattern, _normalize_resource_name(name))

    def add_gpu_resource(self, pattern: str, name: str) -> None:
        self.gpus.append(self._make(pattern, name))

    def add_mig_resource(self, pattern: str, name: str) -> None:
        self.migs.append(self._make(pattern, name))


def is_uuid_ref(ref: str) -> bool:
    return ref.startswith("GPU-") or ref.startswith("MIG-")


def is_gpu_index_ref(ref: str) -> bool:
    return _GPU_INDEX_RE.fullmatch(ref) is not None


def is_mig_index_ref(ref: str) -> bool:
    return _MIG_INDEX_RE.fullmatch(ref) is not None


@dataclass
class ReplicatedDevices:
    """Selects which devices of a resource get replicated."""

    all: bool = False
    count: int = 0
    ids: list[str] = field(default_factory=list)


@dataclass
class ReplicatedResource:
    """A time-sliced resource with its replica count."""

    name: str
    replicas: int
    rename: str = ""
    devices: ReplicatedDevices = field(default_factory=lambda: ReplicatedDevices(all=True))


@dataclass
class Flags:
    """Command-line settings of the device plugin."""

    mig_strategy: MigStrategy = MigStrategy.NONE
    fail_on_init_error: bool = True
    nvidia_driver_root: str = "/"
    gds_enabled: bool = False
    mofed_enabled: bool = False
    pass_device_specs: bool = False
    device_list_strategy: list[str] = field(
        default_factory=lambda: [DEVICE_LIST_STRATEGY_ENVVAR]
    )
    device_id_strategy: DeviceIDStrategy = DeviceIDStrategy.UUID
    cdi_annotation_prefix: str = DEFAULT_CDI_ANNOTATION_PREFIX
    device_split_count: int = 10
    device_memory_scaling: float = 1.0
    device_cores_scaling: float = 1.0
    disable_core_limit: bool = False


@dataclass
class DeviceConfig:
    """Complete configuration of the device plugin."""

    flags: Flags = field(default_factory=Flags)
    resources: Resources = field(default_factory=Resources)
    time_slicing: list[ReplicatedResource] = field(default_factory=list)
    fail_requests_greater_than_one: bool = False
    resource_name: str = DEFAULT_RESOURCE_NAME