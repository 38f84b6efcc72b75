"""Device reconciliation between a cloned base image and the requested topology."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from vmprovision.errors import DeviceNotFound
from vmprovision.models import Cluster, Datastore, Device, DeviceChange, DeviceKind, NetworkSpec

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationPlan:
    """Device changes for one VM plus the devices the agent environment needs."""

    changes: List[DeviceChange]
    system_disk: Device
    ephemeral_disk: Device
    nic_index: Dict[str, str] = field(default_factory=dict)


def _first_of_kind(devices: List[Device], kind: DeviceKind) -> Optional[Device]:
    return next((device for device in devices if device.kind == kind), None)


class DeviceReconciler:
    """
    Diffs the base image's device list against the requested disks and networks.

    The base image must carry a system disk and a PCI controller. Its NICs
    are always removed; one NIC is added per requested network.
    """

    def __init__(self, gateway: Any, disk_planner: Any):
        self.gateway = gateway
        self.disk_planner = disk_planner

    def reconcile(
        self,
        devices: List[Device],
        networks: Dict[str, NetworkSpec],
        cluster: Cluster,
        datastore: Datastore,
        name: str,
        disk_mb: int,
    ) -> ReconciliationPlan:
        """
        Build the full change set for a freshly replicated VM.

        Args:
            devices: Devices read from the replicated base image
            networks: Requested networks keyed by logical network name
            cluster: Placement target, used to scope network lookups
            datastore: Datastore for the new ephemeral disk
            name: Name of the VM being created
            disk_mb: Ephemeral disk size

        Returns:
            ReconciliationPlan whose changes have normalized unit numbers

        Raises:
            DeviceNotFound: if the system disk or PCI controller is missing
        """
        system_disk = _first_of_kind(devices, DeviceKind.DISK)
        if system_disk is None:
            raise DeviceNotFound(f"Base image for {name} has no system disk")
        pci_controller = _first_of_kind(devices, DeviceKind.PCI_CONTROLLER)
        if pci_controller is None:
            raise DeviceNotFound(f"Base image for {name} has no PCI controller")

        changes: List[DeviceChange] = []

        ephemeral = self.disk_planner.build_attach_spec(disk_mb, name, datastore, system_disk.controller_key)
        changes.append(ephemeral)

        nic_index: Dict[str, str] = {}
        for network_name in sorted(networks):
            provider_name = networks[network_name].name
            network_ref = self.gateway.find_network([cluster.datacenter.name, "network", provider_name])
            changes.append(self.gateway.build_nic_add_spec(provider_name, network_ref, pci_controller.key, nic_index))

        for nic in (device for device in devices if device.is_nic):
            changes.append(self.gateway.build_nic_remove_spec(nic))

        self.gateway.normalize_unit_numbers(devices, changes)

        logger.debug(f"Reconciled {len(devices)} devices of {name} into {len(changes)} changes")
        return ReconciliationPlan(
            changes=changes,
            system_disk=system_disk,
            ephemeral_disk=ephemeral.device,
            nic_index=nic_index,
        )
