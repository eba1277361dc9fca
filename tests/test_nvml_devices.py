import pytest

from vgpu_plugin.devices import WSL_DEVICE_PATH, DeviceError, build_device
from vgpu_plugin.nvml import NvmlError, Return
from vgpu_plugin.nvml_devices import (
    NvmlGpuDevice,
    NvmlMigDevice,
    WslDevice,
    new_gpu_device,
    new_mig_device,
)


class FakeDevice:
    def __init__(self, uuid="GPU-fake-0", minor=0, bus_id=b"", gi=0, ci=0, parent=None, fail=()):
        self.uuid = uuid
        self.minor = minor
        self.bus_id = bus_id
        self.gi = gi
        self.ci = ci
        self.parent = parent
        self.fail = set(fail)

    def _check(self, name):
        if name in self.fail:
            raise NvmlError(Return.ERROR_UNKNOWN)

    def get_uuid(self):
        self._check("uuid")
        return self.uuid

    def get_minor_number(self):
        self._check("minor")
        return self.minor

    def get_pci_bus_id(self):
        self._check("pci")
        return self.bus_id

    def get_gpu_instance_id(self):
        self._check("gi")
        return self.gi

    def get_compute_instance_id(self):
        self._check("ci")
        return self.ci

    def get_device_handle_from_mig_device_handle(self):
        self._check("parent")
        return self.parent


BUS_ID = b"00000000:3B:00.0\x00\x00"


def write_numa(root, value):
    d = root / "0000:3b:00.0"
    d.mkdir(parents=True)
    (d / "numa_node").write_text(value)


def test_gpu_uuid_and_paths():
    dev = NvmlGpuDevice(FakeDevice(uuid="GPU-abc", minor=3))
    assert dev.get_uuid() == "GPU-abc"
    assert dev.get_paths() == ["/dev/nvidia3"]


def test_gpu_paths_error():
    with pytest.raises(DeviceError, match="minor number"):
        NvmlGpuDevice(FakeDevice(fail={"minor"})).get_paths()


def test_gpu_uuid_error_propagates():
    with pytest.raises(NvmlError):
        NvmlGpuDevice(FakeDevice(fail={"uuid"})).get_uuid()


def test_gpu_numa_node_read_from_sysfs(tmp_path):
    write_numa(tmp_path, "1\n")
    dev = NvmlGpuDevice(FakeDevice(bus_id=BUS_ID), sysfs_root=str(tmp_path))
    assert dev.get_numa_node() == (True, 1)


def test_gpu_numa_node_missing_file(tmp_path):
    dev = NvmlGpuDevice(FakeDevice(bus_id=BUS_ID), sysfs_root=str(tmp_path))
    assert dev.get_numa_node() == (False, 0)


def test_gpu_numa_node_negative(tmp_path):
    write_numa(tmp_path, "-1\n")
    dev = NvmlGpuDevice(FakeDevice(bus_id=BUS_ID), sysfs_root=str(tmp_path))
    assert dev.get_numa_node() == (False, 0)


def test_gpu_numa_node_garbage(tmp_path):
    write_numa(tmp_path, "abc")
    dev = NvmlGpuDevice(FakeDevice(bus_id=BUS_ID), sysfs_root=str(tmp_path))
    with pytest.raises(DeviceError):
        dev.get_numa_node()


def test_gpu_numa_pci_error():
    with pytest.raises(DeviceError, match="PCI Bus Info"):
        NvmlGpuDevice(FakeDevice(fail={"pci"})).get_numa_node()


def test_wsl_device(tmp_path):
    write_numa(tmp_path, "0")
    dev = WslDevice(FakeDevice(uuid="GPU-w", bus_id=BUS_ID), sysfs_root=str(tmp_path))
    assert dev.get_uuid() == "GPU-w"
    assert dev.get_paths() == [WSL_DEVICE_PATH]
    assert dev.get_numa_node() == (True, 0)


def test_new_gpu_device_selects_kind():
    gpu = FakeDevice()
    index, info = new_gpu_device(2, gpu)
    assert index == "2"
    assert isinstance(info, NvmlGpuDevice) and info.device is gpu
    index, info = new_gpu_device(2, gpu, True)
    assert index == "2"
    assert isinstance(info, WslDevice)


def test_new_mig_device_index():
    mig = FakeDevice()
    index, info = new_mig_device(1, 0, mig)
    assert index == "1:0"
    assert info.device is mig


def _minors(tmp_path, text):
    path = tmp_path / "mig-minors"
    path.write_text(text)
    return str(path)


def test_mig_paths(tmp_path):
    minors = _minors(tmp_path, "gpu0/gi1/access 12\ngpu0/gi1/ci0/access 13\n")
    parent = FakeDevice(minor=0)
    dev = NvmlMigDevice(FakeDevice(uuid="MIG-x", gi=1, ci=0, parent=parent), minors_path=minors)
    assert dev.get_uuid() == "MIG-x"
    assert dev.get_paths() == [
        "/dev/nvidia0",
        "/dev/nvidia-caps/nvidia-cap12",
        "/dev/nvidia-caps/nvidia-cap13",
    ]


def test_mig_paths_missing_ci_capability(tmp_path):
    minors = _minors(tmp_path, "gpu0/gi1/access 12\n")
    dev = NvmlMigDevice(FakeDevice(gi=1, ci=0, parent=FakeDevice(minor=0)), minors_path=minors)
    with pytest.raises(DeviceError, match="missing MIG"):
        dev.get_paths()


def test_mig_paths_without_minors_file(tmp_path):
    dev = NvmlMigDevice(
        FakeDevice(gi=1, ci=0, parent=FakeDevice(minor=0)),
        minors_path=str(tmp_path / "absent"),
    )
    with pytest.raises(DeviceError, match="missing MIG"):
        dev.get_paths()


def test_mig_paths_parent_error(tmp_path):
    minors = _minors(tmp_path, "")
    dev = NvmlMigDevice(FakeDevice(fail={"parent"}), minors_path=minors)
    with pytest.raises(DeviceError, match="parent device"):
        dev.get_paths()


def test_mig_numa_comes_from_parent(tmp_path):
    write_numa(tmp_path, "1")
    parent = FakeDevice(bus_id=BUS_ID)
    dev = NvmlMigDevice(FakeDevice(parent=parent), sysfs_root=str(tmp_path))
    assert dev.get_numa_node() == NvmlGpuDevice(parent, str(tmp_path)).get_numa_node()
    assert dev.get_numa_node()[0] is True


def test_mig_numa_parent_error():
    with pytest.raises(DeviceError):
        NvmlMigDevice(FakeDevice(fail={"parent"})).get_numa_node()


def test_build_device_from_gpu(tmp_path):
    write_numa(tmp_path, "1")
    info = NvmlGpuDevice(FakeDevice(uuid="GPU-b", minor=5, bus_id=BUS_ID), str(tmp_path))
    device = build_device("0", info)
    assert device.id == "GPU-b"
    assert device.paths == info.get_paths()
    assert device.numa_node == 1
    assert device.index == "0"