"""Tests for models, resources and naming helpers."""

import pytest

from vmprovision.models import AntiAffinityRule, NetworkSpec, ResourceProfile
from vmprovision.naming import generate_unique_name, machine_name
from vmprovision.resources import BYTES_PER_MB, bytes_to_mb


def test_ephemeral_footprint():
    profile = ResourceProfile(memory_mb=2048, cpu=2, disk_mb=1024)

    assert profile.ephemeral_footprint(4096) == 7168
    # each input counts exactly once
    assert profile.ephemeral_footprint(5120) - profile.ephemeral_footprint(4096) == 1024


def test_network_spec_from_dict():
    network = NetworkSpec.from_dict(
        {
            "ip": "10.0.0.10",
            "netmask": "255.255.255.0",
            "gateway": "10.0.0.1",
            "dns": ["10.0.0.1"],
            "cloud_properties": {"name": "vmbr0"},
        }
    )

    assert network.name == "vmbr0"
    assert network.to_dict() == {
        "ip": "10.0.0.10",
        "netmask": "255.255.255.0",
        "gateway": "10.0.0.1",
        "dns": ["10.0.0.1"],
        "default": [],
        "cloud_properties": {"name": "vmbr0"},
    }


def test_network_spec_from_dict_name_shortcut():
    assert NetworkSpec.from_dict({"name": "vmbr1"}).name == "vmbr1"


def test_network_spec_from_dict_requires_name():
    with pytest.raises(ValueError, match="cloud_properties.name"):
        NetworkSpec.from_dict({"ip": "10.0.0.10"})


def test_anti_affinity_rule_from_dict():
    assert AntiAffinityRule.from_dict({"name": "spread", "type": "separate_vms"}) == AntiAffinityRule("spread")
    assert AntiAffinityRule.from_dict({"name": "spread"}).type == ""


@pytest.mark.parametrize(
    "size,expected",
    [
        (0, 0),
        (BYTES_PER_MB, 1),
        (4 * 1024**3, 4096),
        (BYTES_PER_MB + 1, 1),
    ],
)
def test_bytes_to_mb(size, expected):
    assert bytes_to_mb(size) == expected


def test_machine_name_uses_prefix(monkeypatch):
    from vmprovision.config import Config

    monkeypatch.setattr(Config, "VM_NAME_PREFIX", "k3s-")

    assert machine_name("abc") == "k3s-abc"


def test_generate_unique_name():
    assert generate_unique_name() != generate_unique_name()
    assert len(generate_unique_name()) == 36
