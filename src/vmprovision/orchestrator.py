#!/usr/bin/env python3
"""
src/vmprovision/orchestrator.py

Creates a single VM from a base image and guarantees that a failure after
the clone leaves no VM behind.

Workflow:
1. Size the request and ask the placer for a node/storage
2. Replicate the base image onto the chosen storage
3. Reconcile the image's devices with the requested disk and networks
4. Clone and reconfigure in one step
5. Write the agent environment, power on, apply anti-affinity

Any error in steps 3-5 deletes the VM by name and re-raises the original error.
"""

import logging
from typing import Any, Callable

from vmprovision.anti_affinity import apply_anti_affinity
from vmprovision.models import MachineConfigSpec, ProvisioningRequest, ResourceProfile
from vmprovision.naming import generate_unique_name, machine_name
from vmprovision.reconciler import DeviceReconciler
from vmprovision.resources import bytes_to_mb

logger = logging.getLogger(__name__)


class VmProvisioningOrchestrator:
    """Sequences VM creation across the hypervisor and its collaborators."""

    def __init__(
        self,
        gateway: Any,
        placer: Any,
        disk_planner: Any,
        env_builder: Any,
        env_writer: Any,
        rule_applier: Any,
        profile: ResourceProfile,
        name_generator: Callable[[], str] = generate_unique_name,
    ) -> None:
        self.gateway = gateway
        self.placer = placer
        self.disk_planner = disk_planner
        self.env_builder = env_builder
        self.env_writer = env_writer
        self.rule_applier = rule_applier
        self.profile = profile
        self.name_generator = name_generator
        self.reconciler = DeviceReconciler(gateway, disk_planner)

        logger.debug(f"VM orchestrator initialized with {profile}")

    def create(self, request: ProvisioningRequest) -> str:
        """
        Provision a VM and return its name.

        Errors raised before the image is replicated propagate without any
        cleanup. Afterwards every error deletes the VM and is re-raised
        unchanged.
        """
        image = self.gateway.resolve_image(request.image_id)

        committed = self.gateway.read_properties(image, ["summary.storage.committed"])
        image_size_mb = bytes_to_mb(committed["summary.storage.committed"])

        disk_specs = self.gateway.resolve_disk_specs(request.disk_ids)
        # includes swap and the linked clone delta
        footprint = self.profile.ephemeral_footprint(image_size_mb)
        decision = self.placer.place(self.profile.memory_mb, footprint, disk_specs)
        cluster, datastore = decision.cluster, decision.datastore

        name = machine_name(self.name_generator())
        logger.info(f"Creating vm: {name} on {cluster.node} stored in {datastore.name}")

        replica = self.gateway.replicate(cluster, datastore, request.image_id)

        try:
            properties = self.gateway.read_properties(replica, ["config.hardware.device", "snapshot"])
            devices = properties["config.hardware.device"]
            snapshot = properties["snapshot"]

            plan = self.reconciler.reconcile(
                devices, request.networks, cluster, datastore, name, self.profile.disk_mb
            )
            config = MachineConfigSpec(
                memory_mb=self.profile.memory_mb, cpu=self.profile.cpu, device_changes=plan.changes
            )

            logger.info(f"Cloning vm: {replica.name or replica.vmid} to {name}")
            vm = self.gateway.clone_from_snapshot_and_wait(
                replica,
                name,
                cluster.datacenter.vm_folder,
                cluster.resource_pool,
                datastore,
                True,
                snapshot,
                config,
            )

            devices = self.gateway.read_properties(vm, ["config.hardware.device"])["config.hardware.device"]
            network_env = self.env_builder.network_wiring(devices, request.networks, plan.nic_index)
            disk_env = self.env_builder.disk_wiring(plan.system_disk, plan.ephemeral_disk)
            env = self.env_builder.build(name, vm, request.agent_id, network_env, disk_env)
            env["env"] = request.environment
            logger.info(f"Setting VM env: {env}")

            location = self.gateway.get_location(
                vm, datacenter=cluster.datacenter.name, datastore=datastore.name, vm=name
            )
            self.env_writer.write(vm, location, env)

            logger.info(f"Powering on VM: {vm.vmid} ({name})")
            self.gateway.power_on_and_wait(cluster.datacenter.name, vm)

            apply_anti_affinity(decision.rules, self.rule_applier, self.gateway.client, cluster, vm)
        except Exception as e:
            logger.exception(f"Provisioning {name} failed, deleting it: {e}")
            self._rollback(name)
            raise

        return name

    def _rollback(self, name: str) -> None:
        """Delete a half-created VM. A failure here is logged and never replaces the original error."""
        try:
            self.gateway.delete_machine(name)
        except Exception:
            logger.exception(f"Rollback of {name} failed; the VM may need manual cleanup")
