import pytest

from vgpu_plugin.config import DeviceConfig, Resource
from vgpu_plugin.manager import (
    ManagerError,
    Mode,
    NullManager,
    NvmlManager,
    TegraManager,
    new_manager,
    resolve_mode,
)
from vgpu_plugin.nvml import NvmlError, Return


class FakePlatform:
    def __init__(self, nvml=True, tegra=False, wsl=False):
        self.nvml, self.tegra, self.wsl = nvml, tegra, wsl

    def has_nvml(self):
        return self.nvml, "test"

    def is_tegra_system(self):
        return self.tegra, "test"

    def has_dxcore(self):
        return self.wsl, "test"


class FakeNvml:
    def __init__(self, fail_init=False):
        self.fail_init = fail_init
        self.inits = 0
        self.shutdowns = 0

    def init(self):
        self.inits += 1
        if self.fail_init:
            raise NvmlError(Return.ERROR_DRIVER_NOT_LOADED)

    def shutdown(self):
        self.shutdowns += 1


class FakeGpu:
    def get_name(self):
        return "Tesla T4"

    def is_mig_enabled(self):
        return False

    def get_uuid(self):
        return "GPU-made-up-0001"

    def get_minor_number(self):
        return 0

    def get_pci_bus_id(self):
        return "0000:FE:1F.7"


class FakeDeviceLib:
    def visit_devices(self, visitor):
        visitor(0, FakeGpu())

    def visit_mig_devices(self, visitor):
        return None

    def visit_mig_profiles(self, visitor):
        return None


class RecordingCdi:
    def __init__(self):
        self.created = 0

    def create_spec_file(self):
        self.created += 1

    def qualified_name(self, device_class, device_id):
        return f"nvidia.com/{device_class}={device_id}"


def _config():
    config = DeviceConfig()
    config.resources.gpus.append(Resource("*", "nvidia.com/gpu"))
    return config


@pytest.mark.parametrize(
    "nvml, tegra, expected",
    [(True, False, Mode.NVML), (False, True, Mode.TEGRA), (True, True, Mode.NVML)],
)
def test_resolve_mode(nvml, tegra, expected):
    assert resolve_mode(FakePlatform(nvml, tegra)) == expected


def test_resolve_mode_no_platform():
    assert resolve_mode(FakePlatform(False, False), fail_on_init_error=False) == "null"
    with pytest.raises(ManagerError):
        resolve_mode(FakePlatform(False, False), fail_on_init_error=True)


def test_null_manager_without_config():
    manager = new_manager(None)
    assert isinstance(manager, NullManager)
    assert manager.get_plugins() == []


def test_nvml_init_failure():
    with pytest.raises(ManagerError):
        new_manager(_config(), FakePlatform(), FakeNvml(fail_init=True), FakeDeviceLib(),
                    fail_on_init_error=True)
    manager = new_manager(_config(), FakePlatform(), FakeNvml(fail_init=True), FakeDeviceLib())
    assert isinstance(manager, NullManager)


def test_nvml_manager_builds_plugins():
    nvml = FakeNvml()
    manager = new_manager(_config(), FakePlatform(), nvml, FakeDeviceLib(), cdi_enabled=True)
    assert isinstance(manager, NvmlManager)
    assert manager.cdi_enabled is True
    assert nvml.shutdowns == 1
    plugins = manager.get_plugins()
    assert len(plugins) == 1
    assert list(plugins[0].devices()) == ["GPU-made-up-0001"]


def test_nvml_manager_forwards_cdi_spec_creation():
    handler = RecordingCdi()
    manager = new_manager(_config(), FakePlatform(), FakeNvml(), FakeDeviceLib(),
                          cdi_handler=handler)
    manager.create_cdi_spec_file()
    assert handler.created == 1


def test_tegra_manager_disables_cdi():
    handler = RecordingCdi()
    manager = new_manager(_config(), FakePlatform(nvml=False, tegra=True),
                          cdi_handler=handler, cdi_enabled=True)
    assert isinstance(manager, TegraManager)
    assert manager.cdi_enabled is False
    manager.create_cdi_spec_file()
    assert handler.created == 0


def test_tegra_manager_builds_plugins():
    manager = TegraManager(_config())
    plugins = manager.get_plugins()
    assert len(plugins) == 1
    assert list(plugins[0].devices()) == ["tegra"]


def test_null_platform_gives_null_manager():
    manager = new_manager(_config(), FakePlatform(False, False))
    assert isinstance(manager, NullManager)
    assert manager.create_cdi_spec_file() is None