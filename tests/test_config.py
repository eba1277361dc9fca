import pytest

from vgpu_plugin.config import (
    DEVICE_LIST_STRATEGY_CDI_ANNOTATIONS,
    DEVICE_LIST_STRATEGY_ENVVAR,
    DeviceConfig,
    DeviceIDStrategy,
    MigStrategy,
    ReplicatedResource,
    Resource,
    Resources,
    is_gpu_index_ref,
    is_mig_index_ref,
    is_uuid_ref,
    new_device_list_strategies,
)


def test_device_list_strategies_includes():
    strategies = new_device_list_strategies(["cdi-annotations"])
    assert strategies.includes(DEVICE_LIST_STRATEGY_CDI_ANNOTATIONS)
    assert not strategies.includes(DEVICE_LIST_STRATEGY_ENVVAR)


def test_device_list_strategies_rejects_unknown():
    with pytest.raises(ValueError):
        new_device_list_strategies(["envvar", "bogus"])


def test_device_list_strategies_rejects_empty():
    with pytest.raises(ValueError):
        new_device_list_strategies([])


@pytest.mark.parametrize(
    "pattern,name,expected",
    [
        ("*", "Tesla P4", True),
        ("tesla*", "Tesla P4", True),
        ("A100*", "Tesla P4", False),
        ("1g.5gb", "1g.5gb", True),
    ],
)
def test_resource_matches(pattern, name, expected):
    assert Resource(pattern, "nvidia.com/gpu").matches(name) is expected


def test_add_resources_normalizes_names():
    resources = Resources()
    resources.add_mig_resource("*", "gpu")
    resources.add_gpu_resource("*", "example.com/thing")
    assert resources.migs == [Resource("*", "nvidia.com/gpu")]
    assert resources.gpus == [Resource("*", "example.com/thing")]


def test_add_resource_rejects_empty_name():
    with pytest.raises(ValueError):
        Resources().add_gpu_resource("*", "")


@pytest.mark.parametrize(
    "ref,uuid,gpu,mig",
    [
        ("GPU-abc", True, False, False),
        ("MIG-abc", True, False, False),
        ("3", False, True, False),
        ("0:1", False, False, True),
        ("x", False, False, False),
    ],
)
def test_reference_kinds(ref, uuid, gpu, mig):
    assert (is_uuid_ref(ref), is_gpu_index_ref(ref), is_mig_index_ref(ref)) == (uuid, gpu, mig)


def test_defaults():
    config = DeviceConfig()
    assert config.flags.mig_strategy is MigStrategy.NONE
    assert config.flags.device_id_strategy is DeviceIDStrategy.UUID
    assert config.flags.cdi_annotation_prefix == "cdi.k8s.io/"
    assert config.resources.gpus == []


def test_replicated_resource_defaults_to_all_devices():
    resource = ReplicatedResource(name="nvidia.com/gpu", replicas=2)
    assert resource.devices.all is True
    assert resource.devices.ids == []