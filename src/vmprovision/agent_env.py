"""
Agent environment: the boot-time settings document handed to the VM agent.

The builder assembles the document from the reconfigured devices; the
writer stores it as a cloud-init snippet on the VM's node and points the
VM's cicustom setting at it.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import paramiko
import yaml

from vmprovision.config import Config
from vmprovision.errors import DeviceNotFound
from vmprovision.models import Device, MachineHandle, MachineLocation, NetworkSpec

logger = logging.getLogger(__name__)

GUEST_ENV_PATH = "/var/lib/vmprovision/agent-env.json"


class AgentEnvironmentBuilder:
    """Builds agent environment documents."""

    def __init__(self, agent_properties: Optional[Dict[str, Any]] = None):
        self.agent_properties = dict(agent_properties or {})

    @staticmethod
    def network_wiring(
        devices: List[Device], networks: Dict[str, NetworkSpec], nic_index: Dict[str, str]
    ) -> Dict[str, Dict[str, Any]]:
        """
        Match each requested network to a NIC on the reconfigured VM.

        NICs are grouped by provider network name (via ``nic_index`` when the
        bridge was resolved to a different reference) and handed out one per
        requested network, so two networks on the same bridge get two NICs.
        """
        nics: Dict[str, List[Device]] = {}
        for device in devices:
            if not device.is_nic:
                continue
            bridge = device.backing.get("bridge")
            provider_name = nic_index.get(bridge, bridge)
            nics.setdefault(provider_name, []).append(device)

        wiring = {}
        for network_name in sorted(networks):
            network = networks[network_name]
            candidates = nics.get(network.name) or []
            if not candidates:
                raise DeviceNotFound(f"No NIC attached to network {network.name!r} for {network_name!r}")
            nic = candidates.pop(0)
            entry = network.to_dict()
            entry["mac"] = nic.backing.get("macaddr")
            wiring[network_name] = entry
        return wiring

    @staticmethod
    def disk_wiring(system_disk: Device, ephemeral_disk: Device) -> Dict[str, Any]:
        return {
            "system": str(system_disk.unit_number),
            "ephemeral": str(ephemeral_disk.unit_number),
            "persistent": {},
        }

    def build(
        self,
        name: str,
        handle: MachineHandle,
        agent_id: str,
        network_wiring: Dict[str, Any],
        disk_wiring: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Assemble the document; static agent properties are merged last."""
        env: Dict[str, Any] = {
            "vm": {"name": name, "id": f"vm-{handle.vmid}"},
            "agent_id": agent_id,
            "networks": network_wiring,
            "disks": disk_wiring,
        }
        env.update(self.agent_properties)
        return env


class SnippetEnvironmentWriter:
    """Persists agent environments as cloud-init user-data snippets."""

    def __init__(self, proxmox: Any, snippets_storage: Optional[str] = None, snippets_dir: Optional[str] = None):
        """
        Args:
            proxmox: ProxmoxAPI client, used to set cicustom on the VM
            snippets_storage: Storage with 'snippets' content enabled
            snippets_dir: Directory backing that storage on each node
        """
        self.proxmox = proxmox
        self.snippets_storage = snippets_storage or Config.SNIPPETS_STORAGE
        self.snippets_dir = snippets_dir or Config.SNIPPETS_DIR

    @staticmethod
    def render(document: Dict[str, Any]) -> str:
        """Render the document as cloud-config that drops it into the guest."""
        user_data = {
            "write_files": [
                {
                    "path": GUEST_ENV_PATH,
                    "permissions": "0600",
                    "content": json.dumps(document, indent=2, sort_keys=True),
                }
            ]
        }
        return "#cloud-config\n" + yaml.safe_dump(user_data, default_flow_style=False)

    def snippet_name(self, location: MachineLocation) -> str:
        return f"{location.vm}-agent-env.yaml"

    def write(self, handle: MachineHandle, location: MachineLocation, document: Dict[str, Any]) -> None:
        filename = self.snippet_name(location)
        remote_path = f"{self.snippets_dir}/{filename}"
        logger.info(f"Writing agent env for {location.vm} to {handle.node}:{remote_path}")

        self._upload(handle.node, remote_path, self.render(document))

        self.proxmox.nodes(handle.node).qemu(handle.vmid).config.put(
            cicustom=f"user={self.snippets_storage}:snippets/{filename}"
        )

    @staticmethod
    def _upload(host: str, remote_path: str, content: str) -> None:
        """Write a file on a Proxmox node over SFTP."""
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(hostname=host, username=Config.SSH_USER, key_filename=Config.SSH_KEY_PATH)
        try:
            sftp = ssh.open_sftp()
            try:
                with sftp.open(remote_path, "w") as remote_file:
                    remote_file.write(content)
            finally:
                sftp.close()
        finally:
            ssh.close()
