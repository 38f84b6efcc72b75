"""Shared test fixtures and configuration for vmprovision tests."""

import copy
from typing import Any, Dict, List
from unittest import mock

import pytest

from vmprovision.config import Config
from vmprovision.errors import ImageNotFound, NetworkNotFound
from vmprovision.models import (
    Cluster,
    Datacenter,
    Datastore,
    DeviceOperation,
    MachineHandle,
    MachineLocation,
    PlacementDecision,
)
from vmprovision.proxmox_gateway import ProxmoxGateway, devices_from_config

MB = 1024 * 1024


@pytest.fixture
def template_config() -> Dict[str, Any]:
    """Proxmox config of a base image template with one NIC."""
    return {
        "name": "ubuntu-2404",
        "template": 1,
        "memory": 2048,
        "cores": 2,
        "scsihw": "virtio-scsi-pci",
        "scsi0": "local-zfs:base-9000-disk-0,size=4G",
        "ide2": "local-zfs:vm-9000-cloudinit,media=cdrom",
        "net0": "virtio=BC:24:11:00:00:01,bridge=vmbr0,firewall=1",
        "boot": "order=scsi0",
    }


class FakeGateway(ProxmoxGateway):
    """
    In-memory gateway: device bookkeeping is real, remote calls are simulated.

    Set ``fail_on`` to one of 'read_devices', 'reconfigure', 'power_on'
    to inject a failure at that step.
    """

    def __init__(self, template_config: Dict[str, Any]):
        super().__init__(mock.MagicMock(), datacenter="dc1", task_timeout=1, poll_interval=0)
        self.template_devices = devices_from_config(template_config)
        self.committed = 4096 * MB
        self.snapshot = "base"
        self.networks = {"vmbr0", "vmbr1", "vmbr25gbe"}
        self.image_exists = True
        self.fail_on = None
        self.delete_error = None
        self.vms: Dict[int, List[Any]] = {}
        self.calls: List[str] = []
        self.deleted: List[str] = []
        self.power_on_count = 0

    def _maybe_fail(self, step: str) -> None:
        if self.fail_on == step:
            raise RuntimeError(f"{step} failed")

    def resolve_image(self, image_id: str) -> MachineHandle:
        self.calls.append("resolve_image")
        if not self.image_exists:
            raise ImageNotFound(f"Could not find base image: {image_id}")
        return MachineHandle(vmid=9000, node="pve1", name=image_id)

    def resolve_disk_specs(self, disk_ids):
        self.calls.append("resolve_disk_specs")
        return []

    def read_properties(self, handle, names):
        if "config.hardware.device" in names:
            self._maybe_fail("read_devices")
        result = {}
        for name in names:
            if name == "summary.storage.committed":
                result[name] = self.committed
            elif name == "config.hardware.device":
                result[name] = copy.deepcopy(self.vms.get(handle.vmid, self.template_devices))
            elif name == "snapshot":
                result[name] = self.snapshot
        return result

    def replicate(self, cluster, datastore, image_id):
        self.calls.append("replicate")
        handle = MachineHandle(vmid=9001, node=cluster.node, name=f"{image_id}-{datastore.name}")
        self.vms[handle.vmid] = copy.deepcopy(self.template_devices)
        return handle

    def find_network(self, path):
        if path[2] not in self.networks:
            raise NetworkNotFound(f"Network {'/'.join(path)} not found")
        return path[2]

    def clone_from_snapshot_and_wait(self, handle, name, folder, pool, datastore, linked, snapshot, config):
        self.calls.append("clone")
        vm = MachineHandle(vmid=9100, node=handle.node, name=name)
        self.vms[vm.vmid] = copy.deepcopy(self.vms[handle.vmid])
        self.reconfigure_and_wait(vm, config.memory_mb, config.cpu, config.device_changes)
        return vm

    def reconfigure_and_wait(self, handle, memory_mb, cpu, changes):
        self.calls.append("reconfigure")
        self._maybe_fail("reconfigure")
        devices = self.vms[handle.vmid]
        removed = {c.device.label for c in changes if c.operation == DeviceOperation.REMOVE}
        devices[:] = [d for d in devices if d.label not in removed]
        for index, change in enumerate(c for c in changes if c.operation == DeviceOperation.ADD):
            device = copy.deepcopy(change.device)
            device.key = 5000 + index
            if device.is_nic:
                device.backing["macaddr"] = f"BC:24:11:00:01:{index:02X}"
            devices.append(device)

    def get_location(self, handle, datacenter=None, datastore=None, vm=None):
        return MachineLocation(datacenter=datacenter, datastore=datastore, vm=vm)

    def power_on_and_wait(self, datacenter, handle):
        self.calls.append("power_on")
        self._maybe_fail("power_on")
        self.power_on_count += 1

    def delete_machine(self, name):
        self.calls.append("delete")
        self.deleted.append(name)
        if self.delete_error is not None:
            raise self.delete_error
        return True


@pytest.fixture
def fake_gateway(template_config):
    return FakeGateway(template_config)


@pytest.fixture
def cluster() -> Cluster:
    return Cluster(name="pve1", node="pve1", datacenter=Datacenter(name="dc1"), resource_pool="k3s")


@pytest.fixture
def datastore() -> Datastore:
    return Datastore(name="local-zfs", free_space_mb=500 * 1024, total_space_mb=1024 * 1024)


@pytest.fixture
def placement(cluster, datastore) -> PlacementDecision:
    return PlacementDecision(cluster=cluster, datastore=datastore, rules=[])


@pytest.fixture
def mock_proxmox():
    """Mock ProxmoxAPI client for testing."""
    with mock.patch('vmprovision.proxmox_api.ProxmoxAPI') as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        proxmox.nodes.get.return_value = [
            {"node": "pve1", "status": "online"},
            {"node": "pve2", "status": "online"},
            {"node": "pve3", "status": "offline"},
        ]
        proxmox.nodes.return_value.status.get.return_value = {
            "cpuinfo": {"cpus": 8},
            "memory": {"total": 32 * 1024**3, "free": 16 * 1024**3},
        }
        proxmox.cluster.resources.get.return_value = []
        proxmox.cluster.nextid.get.return_value = "120"

        yield proxmox


@pytest.fixture
def mock_env(monkeypatch):
    """Set up test environment variables."""
    for i in range(1, 10):
        for prefix in ["NODE_", "STORAGE_", "POOL_"]:
            monkeypatch.delenv(f"{prefix}{i}", raising=False)
    monkeypatch.delenv("ANTI_AFFINITY_RULE", raising=False)
    monkeypatch.delenv("ANTI_AFFINITY_TYPE", raising=False)

    env_vars = {
        "API_TOKEN": "testuser@pve!testtoken=secretvalue",
        "NODE_1": "pve1",
        "NODE_2": "pve2",
        "STORAGE_1": "local-zfs, ceph-vm",
        "STORAGE_2": "local-2TB-zfs",
        "POOL_1": "k3s",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    # Config reads API_TOKEN once at import
    monkeypatch.setattr(Config, "API_TOKEN", env_vars["API_TOKEN"])

    return env_vars


@pytest.fixture
def mock_ssh_client():
    """Mock SSH client for snippet uploads."""
    with mock.patch('vmprovision.agent_env.paramiko.SSHClient') as mock_ssh:
        client = mock.MagicMock()
        mock_ssh.return_value = client
        yield client
