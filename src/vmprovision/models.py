"""Data models for VM provisioning."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

SEPARATE_VMS = "separate_vms"


class DeviceKind(Enum):
    """Kinds of virtual hardware found in a VM config."""

    DISK = "disk"
    CONTROLLER = "controller"
    PCI_CONTROLLER = "pci_controller"
    NIC = "nic"
    CDROM = "cdrom"
    OTHER = "other"


class DeviceOperation(Enum):
    """Operations that can be applied to a device during reconfiguration."""

    ADD = "add"
    REMOVE = "remove"


@dataclass(frozen=True)
class NetworkSpec:
    """Requested network attachment."""

    name: str
    ip: Optional[str] = None
    netmask: Optional[str] = None
    gateway: Optional[str] = None
    dns: List[str] = field(default_factory=list)
    default: List[str] = field(default_factory=list)
    cloud_properties: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkSpec":
        """Build a NetworkSpec from a caller-supplied network mapping.

        The provider network name lives under ``cloud_properties.name``; a
        top-level ``name`` is accepted as a shortcut.
        """
        cloud_properties = dict(data.get("cloud_properties", {}))
        name = cloud_properties.get("name") or data.get("name")
        if not name:
            raise ValueError("network configuration is missing cloud_properties.name")
        return cls(
            name=name,
            ip=data.get("ip"),
            netmask=data.get("netmask"),
            gateway=data.get("gateway"),
            dns=list(data.get("dns", [])),
            default=list(data.get("default", [])),
            cloud_properties=cloud_properties,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return the network in agent-environment form."""
        return {
            "ip": self.ip,
            "netmask": self.netmask,
            "gateway": self.gateway,
            "dns": list(self.dns),
            "default": list(self.default),
            "cloud_properties": dict(self.cloud_properties),
        }


@dataclass(frozen=True)
class ProvisioningRequest:
    """Everything the caller asks for in a single provisioning call."""

    agent_id: str
    image_id: str
    networks: Dict[str, NetworkSpec] = field(default_factory=dict)
    disk_ids: List[str] = field(default_factory=list)
    environment: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceProfile:
    """Compute and ephemeral disk sizes, all in MB except cpu."""

    memory_mb: int
    cpu: int
    disk_mb: int

    def ephemeral_footprint(self, image_size_mb: int) -> int:
        """Storage needed on the target datastore for this VM.

        Includes swap (memory) and the linked clone delta, sized from the
        committed size of the replicated image rather than its nominal size.
        """
        return self.disk_mb + self.memory_mb + image_size_mb


@dataclass(frozen=True)
class Datacenter:
    """Proxmox cluster as seen by the provisioner."""

    name: str
    vm_folder: Optional[str] = None


@dataclass(frozen=True)
class Cluster:
    """Placement target: a node inside a datacenter plus its resource pool."""

    name: str
    node: str
    datacenter: Datacenter
    resource_pool: Optional[str] = None


@dataclass(frozen=True)
class Datastore:
    """Proxmox storage on a node."""

    name: str
    free_space_mb: int = 0
    total_space_mb: int = 0


@dataclass(frozen=True)
class AntiAffinityRule:
    """Configured anti-affinity rule."""

    name: str
    type: str = SEPARATE_VMS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AntiAffinityRule":
        return cls(name=data["name"], type=data.get("type", ""))


@dataclass(frozen=True)
class PlacementDecision:
    """Where to put a VM, plus any anti-affinity rule for its resource pool."""

    cluster: Cluster
    datastore: Datastore
    rules: List[AntiAffinityRule] = field(default_factory=list)


@dataclass(frozen=True)
class DiskSpec:
    """Existing persistent disk that will be attached to the VM."""

    disk_id: str
    size_mb: int
    datastore: str


@dataclass(frozen=True)
class MachineHandle:
    """Reference to a VM. Holds no live connection state."""

    vmid: int
    node: str
    name: Optional[str] = None


@dataclass
class Device:
    """Snapshot of a single virtual device read from a VM config."""

    key: int
    kind: DeviceKind
    label: str
    controller_key: Optional[int] = None
    unit_number: Optional[int] = None
    backing: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_disk(self) -> bool:
        return self.kind == DeviceKind.DISK

    @property
    def is_nic(self) -> bool:
        return self.kind == DeviceKind.NIC


@dataclass
class DeviceChange:
    """One pending device operation; unit_number is filled in before submission."""

    operation: DeviceOperation
    device: Device
    file_operation: Optional[str] = None


@dataclass
class MachineConfigSpec:
    """Reconfiguration submitted with the clone: sizes plus device changes."""

    memory_mb: int
    cpu: int
    device_changes: List[DeviceChange] = field(default_factory=list)


@dataclass(frozen=True)
class MachineLocation:
    """Where a VM lives, used to scope files written for it."""

    datacenter: str
    datastore: str
    vm: str
