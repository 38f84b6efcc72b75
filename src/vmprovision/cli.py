#!/usr/bin/env python3
"""
Command-line interface for single-VM provisioning.

    vmprovision create --image ubuntu-2404 --network default=vmbr0
    vmprovision delete vm-3f1c...
"""

import logging
import uuid
from pathlib import Path
from typing import Dict, List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from vmprovision.agent_env import AgentEnvironmentBuilder, SnippetEnvironmentWriter
from vmprovision.anti_affinity import HaRuleApplier
from vmprovision.ephemeral_disk import EphemeralDiskPlanner
from vmprovision.errors import ProvisioningError
from vmprovision.models import NetworkSpec, ProvisioningRequest, ResourceProfile
from vmprovision.orchestrator import VmProvisioningOrchestrator
from vmprovision.placer import StoragePlacer
from vmprovision.proxmox_api import ProxmoxClient
from vmprovision.proxmox_gateway import ProxmoxGateway
from vmprovision.resources import profile_from_config

# Initialize CLI app and console
app = typer.Typer(
    name="vmprovision",
    help="Provision single VMs on a Proxmox VE cluster",
    add_completion=False
)
console = Console()

logger = logging.getLogger(__name__)


def parse_networks(values: List[str], networks_file: Optional[Path]) -> Dict[str, NetworkSpec]:
    """Merge NAME=BRIDGE options with an optional YAML mapping of full network configs."""
    networks: Dict[str, NetworkSpec] = {}
    if networks_file is not None:
        with open(networks_file) as f:
            for name, data in (yaml.safe_load(f) or {}).items():
                networks[name] = NetworkSpec.from_dict(data)
    for value in values:
        name, sep, bridge = value.partition("=")
        if not sep or not name or not bridge:
            raise typer.BadParameter(f"expected NAME=BRIDGE, got {value!r}", param_hint="--network")
        networks[name] = NetworkSpec(name=bridge)
    return networks


def build_orchestrator(client: ProxmoxClient, profile: ResourceProfile) -> VmProvisioningOrchestrator:
    gateway = ProxmoxGateway(client.proxmox)
    return VmProvisioningOrchestrator(
        gateway=gateway,
        placer=StoragePlacer(client),
        disk_planner=EphemeralDiskPlanner(),
        env_builder=AgentEnvironmentBuilder(),
        env_writer=SnippetEnvironmentWriter(client.proxmox),
        rule_applier=HaRuleApplier(),
        profile=profile,
    )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
    )


@app.command("create")
def create_vm(
    image: str = typer.Option(..., "--image", "-i", help="Base image template name or VMID"),
    agent_id: Optional[str] = typer.Option(None, help="Agent identifier (random if omitted)"),
    network: List[str] = typer.Option([], "--network", "-n", help="NAME=BRIDGE, repeatable"),
    networks_file: Optional[Path] = typer.Option(None, help="YAML mapping of network name to configuration"),
    disk: List[str] = typer.Option([], "--disk", "-d", help="Existing volume to attach, repeatable"),
    env_file: Optional[Path] = typer.Option(None, "--env", help="YAML/JSON environment passed to the agent"),
    memory: Optional[int] = typer.Option(None, help="RAM in MB"),
    cpus: Optional[int] = typer.Option(None, help="CPU cores"),
    disk_size: Optional[int] = typer.Option(None, help="Ephemeral disk size in MB"),
) -> None:
    """Create, configure and start a VM from a base image."""
    defaults = profile_from_config()
    profile = ResourceProfile(
        memory_mb=memory or defaults.memory_mb,
        cpu=cpus or defaults.cpu,
        disk_mb=disk_size or defaults.disk_mb,
    )

    environment = {}
    if env_file is not None:
        with open(env_file) as f:
            environment = yaml.safe_load(f) or {}

    request = ProvisioningRequest(
        agent_id=agent_id or str(uuid.uuid4()),
        image_id=image,
        networks=parse_networks(network, networks_file),
        disk_ids=list(disk),
        environment=environment,
    )

    console.print(f"🚀 Creating VM from {image}: {profile.cpu} CPUs, {profile.memory_mb}MB RAM, {profile.disk_mb}MB disk")
    try:
        orchestrator = build_orchestrator(ProxmoxClient(), profile)
        name = orchestrator.create(request)
    except ProvisioningError as e:
        console.print(f"❌ Provisioning failed: {e}")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"❌ Provisioning failed ({type(e).__name__}): {e}")
        raise typer.Exit(1)

    table = Table(title="Provisioned VM")
    table.add_column("Name", style="cyan")
    table.add_column("Image", style="blue")
    table.add_column("Agent", style="yellow")
    table.add_column("Networks", style="green")
    table.add_row(name, image, request.agent_id, ", ".join(sorted(request.networks)) or "-")
    console.print(table)
    console.print(f"✅ {name}")


@app.command("delete")
def delete_vm(name: str = typer.Argument(..., help="Name of the VM to delete")) -> None:
    """Stop and delete a VM by name."""
    try:
        gateway = ProxmoxGateway(ProxmoxClient().proxmox)
        deleted = gateway.delete_machine(name)
    except Exception as e:
        console.print(f"❌ Failed to delete {name}: {e}")
        raise typer.Exit(1)

    if deleted:
        console.print(f"🗑️  Deleted {name}")
    else:
        console.print(f"ℹ️  VM {name} does not exist")


if __name__ == "__main__":
    app()
