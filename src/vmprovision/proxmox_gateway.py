#!/usr/bin/env python3
"""
src/vmprovision/proxmox_gateway.py

Hypervisor gateway backed by the Proxmox VE API.

Every read returns plain snapshots (MachineHandle, Device); every change is
submitted as an explicit API call followed by a wait on the resulting task.
Device keys for the snapshots:

    100         PCI bus (implicit on every VM)
    1000-1300   disk controllers (scsi, virtio, sata, ide)
    2000+       disks, 2000 + 100 * bus + unit
    4000+       network adapters, 4000 + unit
"""

import itertools
import logging
import re
import time
from typing import Any, Dict, List, Optional, Tuple

from vmprovision.config import Config
from vmprovision.errors import (
    DeviceNotFound,
    ImageNotFound,
    NetworkNotFound,
    PropertyReadError,
    ProvisioningError,
    TaskError,
)
from vmprovision.models import (
    Cluster,
    Datastore,
    Device,
    DeviceChange,
    DeviceKind,
    DeviceOperation,
    DiskSpec,
    MachineConfigSpec,
    MachineHandle,
    MachineLocation,
)
from vmprovision.resources import BYTES_PER_MB

logger = logging.getLogger(__name__)

PCI_BUS_KEY = 100
NIC_KEY_BASE = 4000
DISK_KEY_BASE = 2000

DISK_BUSES = ("scsi", "virtio", "sata", "ide")
CONTROLLER_KEYS = {bus: 1000 + 100 * index for index, bus in enumerate(DISK_BUSES)}
BUS_BY_CONTROLLER = {key: bus for bus, key in CONTROLLER_KEYS.items()}
MAX_UNITS = {"scsi": 31, "virtio": 16, "sata": 6, "ide": 4, "net": 32}

NIC_OPTIONS = ("bridge", "firewall", "tag", "mtu", "queues", "rate", "link_down", "trunks")

SIZE_UNITS = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
DEVICE_KEY_RE = re.compile(r"^(scsi|virtio|sata|ide|net)(\d+)$")

COMMITTED = "summary.storage.committed"
DEVICES = "config.hardware.device"
SNAPSHOT = "snapshot"


def parse_size(value: str) -> int:
    """Convert a Proxmox size string such as '32G' or '512M' to bytes."""
    value = value.strip()
    if value and value[-1].upper() in SIZE_UNITS:
        return int(float(value[:-1]) * SIZE_UNITS[value[-1].upper()])
    return int(value)


def parse_option_string(value: str) -> Tuple[str, Dict[str, str]]:
    """
    Split a Proxmox property string into its leading value and options.

    'local-zfs:vm-100-disk-0,size=32G' -> ('local-zfs:vm-100-disk-0', {'size': '32G'})
    'virtio=BC:24:11:00:00:01,bridge=vmbr0' -> ('', {'virtio': 'BC:...', 'bridge': 'vmbr0'})
    """
    head = ""
    options: Dict[str, str] = {}
    for index, part in enumerate(value.split(",")):
        if "=" in part:
            key, _, val = part.partition("=")
            options[key.strip()] = val.strip()
        elif index == 0:
            head = part.strip()
    return head, options


def devices_from_config(config: Dict[str, Any]) -> List[Device]:
    """Translate a VM config into a device list ordered by device key."""
    devices = [Device(key=PCI_BUS_KEY, kind=DeviceKind.PCI_CONTROLLER, label="pci.0")]
    buses_in_use = set()

    for name in sorted(config):
        match = DEVICE_KEY_RE.match(name)
        if not match:
            continue
        bus, unit = match.group(1), int(match.group(2))
        head, options = parse_option_string(str(config[name]))

        if bus == "net":
            model, macaddr = next(((k, v) for k, v in options.items() if k not in NIC_OPTIONS), (head, ""))
            devices.append(
                Device(
                    key=NIC_KEY_BASE + unit,
                    kind=DeviceKind.NIC,
                    label=name,
                    controller_key=PCI_BUS_KEY,
                    unit_number=unit,
                    backing={"model": model, "macaddr": macaddr, "bridge": options.get("bridge")},
                )
            )
            continue

        buses_in_use.add(bus)
        is_cdrom = options.get("media") == "cdrom" or "cloudinit" in head
        devices.append(
            Device(
                key=DISK_KEY_BASE + 100 * DISK_BUSES.index(bus) + unit,
                kind=DeviceKind.CDROM if is_cdrom else DeviceKind.DISK,
                label=name,
                controller_key=CONTROLLER_KEYS[bus],
                unit_number=unit,
                backing={"volume": head, **options},
            )
        )

    for bus in buses_in_use:
        label = config.get("scsihw", "lsi") if bus == "scsi" else bus
        devices.append(
            Device(key=CONTROLLER_KEYS[bus], kind=DeviceKind.CONTROLLER, label=label, controller_key=PCI_BUS_KEY)
        )

    return sorted(devices, key=lambda device: device.key)


class ProxmoxGateway:
    """Hypervisor operations used by the provisioning orchestrator."""

    def __init__(
        self,
        proxmox: Any,
        datacenter: Optional[str] = None,
        task_timeout: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        """
        Args:
            proxmox: ProxmoxAPI client instance
            datacenter: Name of the Proxmox cluster, first segment of network paths
            task_timeout: Seconds to wait for any single task
            poll_interval: Seconds between task status polls
        """
        self.client = proxmox
        self.datacenter = datacenter or Config.DATACENTER
        self.task_timeout = task_timeout if task_timeout is not None else Config.TASK_TIMEOUT
        self.poll_interval = poll_interval if poll_interval is not None else Config.TASK_POLL_INTERVAL
        self._scratch_keys = itertools.count(-100, -1)

    # === LOOKUPS ===

    def _vms(self) -> List[Dict[str, Any]]:
        return self.client.cluster.resources.get(type="vm")  # type: ignore[no-any-return]

    def _find_vm(
        self, name: str, template: Optional[bool] = None, node: Optional[str] = None
    ) -> Optional[MachineHandle]:
        for vm in self._vms():
            if vm.get("type", "qemu") != "qemu":
                continue
            if template is not None and bool(vm.get("template")) != template:
                continue
            if node is not None and vm.get("node") != node:
                continue
            if vm.get("name") == name or str(vm.get("vmid")) == name:
                return MachineHandle(vmid=int(vm["vmid"]), node=vm["node"], name=vm.get("name"))
        return None

    def _next_vmid(self) -> int:
        return int(self.client.cluster.nextid.get())

    def resolve_image(self, image_id: str) -> MachineHandle:
        """Locate the base image template by name or VMID."""
        handle = self._find_vm(image_id, template=True)
        if handle is None:
            raise ImageNotFound(f"Could not find base image: {image_id}")
        return handle

    def read_properties(self, handle: MachineHandle, names: List[str]) -> Dict[str, Any]:
        """
        Read the requested properties of a VM.

        Supported names: 'summary.storage.committed' (bytes),
        'config.hardware.device' (List[Device]) and 'snapshot' (name of
        the current snapshot or None).

        Raises:
            PropertyReadError: if any requested property cannot be read
        """
        vm = self.client.nodes(handle.node).qemu(handle.vmid)
        properties: Dict[str, Any] = {}
        config: Optional[Dict[str, Any]] = None

        for name in names:
            if name in (COMMITTED, DEVICES):
                if config is None:
                    config = vm.config.get()
                if name == COMMITTED:
                    properties[name] = self._committed_size(handle.node, config)
                else:
                    properties[name] = devices_from_config(config)
            elif name == SNAPSHOT:
                current = next((s for s in vm.snapshot.get() if s.get("name") == "current"), None)
                properties[name] = current.get("parent") if current else None

        missing = [name for name in names if name not in properties]
        if missing:
            raise PropertyReadError(f"Could not read {', '.join(missing)} of VM {handle.vmid}")
        return properties

    def _committed_size(self, node: str, config: Dict[str, Any]) -> int:
        """
        Bytes actually allocated to the VM's disks, cdroms excluded.

        Uses the 'used' figure the storage reports per volume. The nominal
        size counts only for volumes whose storage does not report usage.
        """
        total = 0
        for device in devices_from_config(config):
            if not device.is_disk:
                continue
            volid = device.backing["volume"]
            nominal = parse_size(device.backing["size"]) if "size" in device.backing else 0
            if ":" not in volid:
                # passthrough device, not a storage volume
                total += nominal
                continue
            storage = volid.split(":", 1)[0]
            info = self.client.nodes(node).storage(storage).content(volid).get()
            used = info.get("used")
            if used is None:
                used = info.get("size", nominal)
            total += int(used)
        return total

    def resolve_disk_specs(self, disk_ids: List[str]) -> List[DiskSpec]:
        """Look up size and storage of existing volumes ('storage:volume')."""
        specs = []
        for disk_id in disk_ids:
            storage = disk_id.split(":", 1)[0]
            node = self._storage_node(storage)
            info = self.client.nodes(node).storage(storage).content(disk_id).get()
            specs.append(DiskSpec(disk_id=disk_id, size_mb=int(info["size"]) // BYTES_PER_MB, datastore=storage))
        return specs

    def _storage_node(self, storage: str) -> str:
        for resource in self.client.cluster.resources.get(type="storage"):
            if resource.get("storage") == storage and resource.get("status") == "available":
                return resource["node"]  # type: ignore[no-any-return]
        raise ProvisioningError(f"Storage {storage!r} is not available on any node")

    def find_network(self, path: List[str]) -> str:
        """
        Resolve a network inventory path [datacenter, 'network', name].

        SDN vnets are cluster-wide; otherwise the bridge must exist on an
        online node.

        Raises:
            NetworkNotFound: if no vnet or bridge of that name exists
        """
        datacenter, _, name = path
        if datacenter != self.datacenter:
            raise NetworkNotFound(f"Unknown datacenter {datacenter!r} for network {name!r}")

        for vnet in self.client.cluster.sdn.vnets.get():
            if vnet.get("vnet") == name:
                return name

        for node in self.client.nodes.get():
            if node.get("status") != "online":
                continue
            for iface in self.client.nodes(node["node"]).network.get(type="any_bridge"):
                if iface.get("iface") == name:
                    return name

        raise NetworkNotFound(f"Network {'/'.join(path)} not found")

    def get_location(
        self,
        handle: MachineHandle,
        datacenter: Optional[str] = None,
        datastore: Optional[str] = None,
        vm: Optional[str] = None,
    ) -> MachineLocation:
        """Location of a VM; missing parts are read from its config."""
        if datastore is None or vm is None:
            config = self.client.nodes(handle.node).qemu(handle.vmid).config.get()
            if datastore is None:
                disk = next((d for d in devices_from_config(config) if d.is_disk), None)
                if disk is None:
                    raise DeviceNotFound(f"VM {handle.vmid} has no disk to locate it by")
                datastore = disk.backing["volume"].split(":", 1)[0]
            if vm is None:
                vm = config.get("name", handle.name)
        return MachineLocation(datacenter=datacenter or self.datacenter, datastore=datastore, vm=vm)

    # === DEVICE CHANGES ===

    def build_nic_add_spec(
        self, network_name: str, network_ref: str, controller_key: int, nic_index: Dict[str, str]
    ) -> DeviceChange:
        """NIC attached to ``network_ref``; records ref -> network name in ``nic_index``."""
        nic_index[network_ref] = network_name
        device = Device(
            key=next(self._scratch_keys),
            kind=DeviceKind.NIC,
            label="",
            controller_key=controller_key,
            backing={"model": Config.VM_NIC_MODEL, "bridge": network_ref},
        )
        return DeviceChange(operation=DeviceOperation.ADD, device=device)

    def build_nic_remove_spec(self, device: Device) -> DeviceChange:
        return DeviceChange(operation=DeviceOperation.REMOVE, device=device)

    @staticmethod
    def _bus(device: Device) -> str:
        if device.is_nic:
            return "net"
        return BUS_BY_CONTROLLER[device.controller_key]  # type: ignore[index]

    def normalize_unit_numbers(self, devices: List[Device], changes: List[DeviceChange]) -> None:
        """
        Assign the lowest free unit number on its bus to every added device.

        Units of devices removed in the same change set stay reserved, since
        Proxmox rejects deleting and setting the same key in one update.
        """
        used: Dict[str, set] = {}
        for device in devices:
            if device.unit_number is None or device.kind in (DeviceKind.CONTROLLER, DeviceKind.PCI_CONTROLLER):
                continue
            used.setdefault(self._bus(device), set()).add(device.unit_number)

        for change in changes:
            device = change.device
            if change.operation != DeviceOperation.ADD or device.unit_number is not None:
                continue
            bus = self._bus(device)
            taken = used.setdefault(bus, set())
            unit = next(u for u in itertools.count() if u not in taken)
            if unit >= MAX_UNITS[bus]:
                raise ProvisioningError(f"No free unit number left on bus {bus}")
            taken.add(unit)
            device.unit_number = unit
            device.label = f"{bus}{unit}"

    @staticmethod
    def _device_value(device: Device) -> str:
        if device.is_nic:
            return f"{device.backing['model']},bridge={device.backing['bridge']}"
        size_gb = max(1, -(-int(device.backing["size_mb"]) // 1024))
        return f"{device.backing['storage']}:{size_gb}"

    # === TASKS ===

    def wait_for_task(self, node: str, upid: str) -> None:
        """
        Poll a task until it stops.

        Raises:
            TaskError: if the task exits with an error status or outlives the timeout
        """
        deadline = time.time() + self.task_timeout
        while time.time() < deadline:
            status = self.client.nodes(node).tasks(upid).status.get()
            if status.get("status") == "stopped":
                exitstatus = str(status.get("exitstatus"))
                if exitstatus.startswith("WARNINGS"):
                    logger.warning(f"Task {upid} on {node} finished with {exitstatus}")
                elif exitstatus != "OK":
                    raise TaskError(upid, exitstatus)
                return
            time.sleep(self.poll_interval)
        raise TaskError(upid, f"timed out after {self.task_timeout}s")

    def _wait_if_task(self, node: str, result: Any) -> None:
        if isinstance(result, str) and result.startswith("UPID:"):
            self.wait_for_task(node, result)

    def replicate(self, cluster: Cluster, datastore: Datastore, image_id: str) -> MachineHandle:
        """
        Return a template copy of the base image on the target storage.

        Copies are named '<image>-<storage>' and reused by later requests
        placed on the same node. Node-local storages share names across
        nodes, so a copy on another node never counts.
        """
        replica_name = f"{image_id}-{datastore.name}"
        replica = self._find_vm(replica_name, template=True, node=cluster.node)
        if replica is not None:
            logger.info(f"Reusing replicated image {replica_name} on {cluster.node} (vmid={replica.vmid})")
            return replica

        source = self.resolve_image(image_id)
        newid = self._next_vmid()
        logger.info(f"Replicating {image_id} to {cluster.node}/{datastore.name} as {replica_name} (vmid={newid})")
        upid = self.client.nodes(source.node).qemu(source.vmid).clone.post(
            newid=newid, name=replica_name, target=cluster.node, storage=datastore.name, full=1
        )
        self.wait_for_task(source.node, upid)

        try:
            result = self.client.nodes(cluster.node).qemu(newid).template.post()
            self._wait_if_task(cluster.node, result)
        except Exception:
            logger.error(f"Converting {replica_name} (vmid={newid}) to a template failed, deleting it")
            self._discard_replica(cluster.node, newid)
            raise
        return MachineHandle(vmid=newid, node=cluster.node, name=replica_name)

    def _discard_replica(self, node: str, vmid: int) -> None:
        """Delete a copy that never became a template, so later requests do not clone a duplicate."""
        try:
            self.wait_for_task(node, self.client.nodes(node).qemu(vmid).delete(purge=1))
        except Exception:
            logger.exception(f"Could not delete unfinished replica vmid={vmid} on {node}")

    def reconfigure_and_wait(self, handle: MachineHandle, memory_mb: int, cpu: int, changes: List[DeviceChange]) -> None:
        """Apply sizes and all device changes in a single config update."""
        params: Dict[str, Any] = {"memory": memory_mb, "cores": cpu}
        removals = []
        for change in changes:
            if change.operation == DeviceOperation.REMOVE:
                removals.append(change.device.label)
            else:
                params[change.device.label] = self._device_value(change.device)
        if removals:
            params["delete"] = ",".join(removals)

        logger.info(f"Reconfiguring VM {handle.vmid}: {params}")
        result = self.client.nodes(handle.node).qemu(handle.vmid).config.post(**params)
        self._wait_if_task(handle.node, result)

    def clone_from_snapshot_and_wait(
        self,
        handle: MachineHandle,
        name: str,
        folder: Optional[str],
        pool: Optional[str],
        datastore: Datastore,
        linked: bool,
        snapshot: Optional[str],
        config: MachineConfigSpec,
    ) -> MachineHandle:
        """
        Clone a template into a new VM and apply ``config`` to the clone.

        Proxmox has no VM folders, so ``folder`` is only logged. Linked clones
        stay on the template's storage; ``datastore`` applies to full clones.
        """
        newid = self._next_vmid()
        params: Dict[str, Any] = {"newid": newid, "name": name, "full": 0 if linked else 1}
        if pool:
            params["pool"] = pool
        if snapshot:
            params["snapname"] = snapshot
        if not linked:
            params["storage"] = datastore.name

        logger.info(f"Cloning {handle.name or handle.vmid} to {name} (vmid={newid}, folder={folder})")
        upid = self.client.nodes(handle.node).qemu(handle.vmid).clone.post(**params)
        self.wait_for_task(handle.node, upid)

        vm = MachineHandle(vmid=newid, node=handle.node, name=name)
        self.reconfigure_and_wait(vm, config.memory_mb, config.cpu, config.device_changes)
        return vm

    def power_on_and_wait(self, datacenter: str, handle: MachineHandle) -> None:
        logger.info(f"Powering on VM {handle.vmid} ({handle.name}) in {datacenter}")
        upid = self.client.nodes(handle.node).qemu(handle.vmid).status.start.post()
        self.wait_for_task(handle.node, upid)

    def delete_machine(self, name: str) -> bool:
        """
        Stop and delete the VM with the given name.

        Returns:
            True if a VM was deleted, False if none had that name
        """
        handle = self._find_vm(name, template=False)
        if handle is None:
            logger.info(f"VM {name} does not exist, nothing to delete")
            return False

        vm = self.client.nodes(handle.node).qemu(handle.vmid)
        if vm.status.current.get().get("status") == "running":
            logger.info(f"Stopping VM {handle.vmid} ({name})")
            self.wait_for_task(handle.node, vm.status.stop.post())

        logger.info(f"Deleting VM {handle.vmid} ({name})")
        self.wait_for_task(handle.node, vm.delete(purge=1))
        return True
