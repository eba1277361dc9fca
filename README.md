# vgpu_plugin

Core logic of a device plugin that lets several containers share an NVIDIA GPU.
It turns the GPUs (and MIG slices) found on a node into named resources,
replicates them for time-slicing, watches them for critical Xid errors and
builds the allocation responses (environment, mounts, device nodes, CDI
annotations) a container needs.

The package reaches the GPU only through the `NvmlLibrary`, `NvmlDevice`,
`DeviceLib` and `PlatformInfo` protocols in `vgpu_plugin.nvml`. Library
failures are reported by raising `NvmlError`, whose `ret` is a `Return` code.
You supply the implementations — a binding to the management library, or test
doubles.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `vgpu_plugin.config`: `DeviceConfig`, `Flags`, `Resources`, `Resource`,
  `ReplicatedResource`, `ReplicatedDevices`, `MigStrategy`,
  `DeviceIDStrategy`, `DeviceListStrategies` and
  `new_device_list_strategies`. `Resource.matches` is a case-insensitive
  glob match; resource names without a `/` get the `nvidia.com/` prefix.
- `vgpu_plugin.nvml`: the protocols above, `Return`, `NvmlError`, `Event`,
  `check(ret)` and `decode_c_string(raw)`.
- `vgpu_plugin.devices`: `Device`, `Devices`, `PluginDevice`, `build_device`,
  and helpers for replica IDs: `new_annotated_id("GPU-0", 1)` gives
  `"GPU-0::1"`, `split_annotated_id("GPU-0::1")` gives `("GPU-0", 1)`.
  `Devices.get_plugin_devices(split_count)` splits each full GPU into
  `split_count` advertised slots.
- `vgpu_plugin.mig`: `parse_mig_minors_line` and
  `get_mig_capability_device_paths`, which map MIG capability paths to
  `/dev/nvidia-caps/nvidia-capN` nodes (empty when the minors file is absent).
- `vgpu_plugin.nvml_devices`: `NvmlGpuDevice`, `NvmlMigDevice`, `WslDevice`,
  `new_gpu_device` and `new_mig_device`, which supply UUID, device paths and
  NUMA node for `build_device`.
- `vgpu_plugin.device_map`: `DeviceMap`, `DeviceMapBuilder`, `new_device_map`
  and `update_device_map_with_replicas`.
- `vgpu_plugin.tegra`: `TegraDevice` and `build_tegra_device_map`.
- `vgpu_plugin.health`: `check_health`, which watches device events until a
  `threading.Event` is set and calls back with unhealthy devices;
  `get_additional_xids`, which parses the comma-separated Xid list of
  `DP_DISABLE_HEALTHCHECKS`; `parse_mig_device_uuid`,
  `get_device_placement` and `get_mig_device_parts`.
- `vgpu_plugin.allocate`: `get_preferred_allocation`, `aligned_alloc` (with a
  pluggable policy, `first_fit_policy` by default) and `distributed_alloc`,
  which spreads replicas evenly over the underlying GPUs.
- `vgpu_plugin.resource_manager`: `ResourceManager`, `NvmlResourceManager`,
  `TegraResourceManager`, `new_nvml_resource_managers`,
  `new_tegra_resource_managers`, `new_resource_managers` and
  `add_default_resources_to_config`.
- `vgpu_plugin.cdi`: the `CdiHandler` protocol, `NullCdiHandler`,
  `qualified_name` and `update_annotations`.
- `vgpu_plugin.server`: `NvidiaDevicePlugin`, which builds
  `ContainerAllocateResponse` objects (with `Mount` and `DeviceSpec`), CDI
  annotations and the advertised device list; `container_cache_directory`.
- `vgpu_plugin.register`: `ApiDeviceInfo`, `parse_nvidia_numa_info`,
  `get_numa_information` (runs `nvidia-smi topo -m`) and
  `collect_api_devices`.
- `vgpu_plugin.manager`: `resolve_mode` and `new_manager`, which returns an
  `NvmlManager`, `TegraManager` or `NullManager` for the platform; managers
  build `NvidiaDevicePlugin` instances with `get_plugins()`.
- `vgpu_plugin.version`: `get_version_parts()` and `get_version_string()`.

## Example

```python
from vgpu_plugin.health import get_additional_xids
from vgpu_plugin.register import parse_nvidia_numa_info

get_additional_xids("68, not-an-int,67")   # [68, 67]

topology = "\tGPU0\tCPU Affinity\tNUMA Affinity\nGPU0\t X \t0-7\t\t1\n"
parse_nvidia_numa_info(0, topology)        # 1
```

## What it does not do

- It has no command-line program and no running service: there is no gRPC
  server, no registration with the kubelet over its socket, and no
  `ListAndWatch` stream. `NvidiaDevicePlugin` builds the responses; serving
  them is left to the caller.
- It does not talk to the Kubernetes API: it does not look up pending pods,
  read or patch node annotations, or take node locks. `collect_api_devices`
  returns the device descriptions without publishing them.
- It generates no CDI spec files; the only CDI handler provided is
  `NullCdiHandler`.
- It contains no binding to the GPU management library; the `vgpu_plugin.nvml`
  protocols must be implemented by you.