"""Chooses the node and storage for a new VM."""

import logging
from typing import Any, Dict, List, Optional

from vmprovision.config import Config
from vmprovision.errors import PlacementError
from vmprovision.models import AntiAffinityRule, Cluster, Datacenter, Datastore, DiskSpec, PlacementDecision
from vmprovision.resources import BYTES_PER_MB

logger = logging.getLogger(__name__)


class StoragePlacer:
    """
    Places VMs on the configured node/storage with the most free space.

    A candidate fits when the node has ``memory`` MB of free RAM and the
    storage can hold the ephemeral footprint plus every existing disk that
    lives on a different storage and would have to follow the VM.
    """

    def __init__(
        self,
        client: Any,
        nodes: Optional[List[Dict[str, Any]]] = None,
        rules: Optional[List[Dict[str, str]]] = None,
        datacenter: Optional[str] = None,
    ) -> None:
        """
        Args:
            client: ProxmoxClient instance
            nodes: Candidates as returned by Config.get_nodes()
            rules: Anti-affinity rule configs as returned by Config.get_anti_affinity_rules()
            datacenter: Name of the Proxmox cluster
        """
        self.client = client
        self.nodes = nodes if nodes is not None else Config.get_nodes()
        raw_rules = rules if rules is not None else Config.get_anti_affinity_rules()
        self.rules = [AntiAffinityRule.from_dict(rule) for rule in raw_rules]
        self.datacenter = Datacenter(name=datacenter or Config.DATACENTER)

    def _storages(self, node: str, allowed: List[str]) -> List[Datastore]:
        datastores = []
        for storage in self.client.proxmox.nodes(node).storage.get(content="images"):
            if not storage.get("active", 1) or (allowed and storage["storage"] not in allowed):
                continue
            datastores.append(
                Datastore(
                    name=storage["storage"],
                    free_space_mb=int(storage.get("avail", 0)) // BYTES_PER_MB,
                    total_space_mb=int(storage.get("total", 0)) // BYTES_PER_MB,
                )
            )
        return datastores

    def place(self, memory: int, footprint: int, disk_specs: List[DiskSpec]) -> PlacementDecision:
        """
        Pick a node and storage for a VM.

        Args:
            memory: RAM in MB
            footprint: Ephemeral footprint in MB
            disk_specs: Existing disks to be attached

        Raises:
            PlacementError: if no configured candidate fits
        """
        online = set(self.client.online_nodes())
        best = None

        for node in self.nodes:
            name = node["name"]
            if name not in online:
                logger.debug(f"Skipping offline node {name}")
                continue

            status = self.client.get_node_status(name)
            free_memory_mb = int(status["memory"]["free"]) // BYTES_PER_MB
            if free_memory_mb < memory:
                logger.debug(f"Node {name} has {free_memory_mb}MB free RAM, need {memory}MB")
                continue

            for datastore in self._storages(name, node.get("storages", [])):
                moved = sum(disk.size_mb for disk in disk_specs if disk.datastore != datastore.name)
                if datastore.free_space_mb < footprint + moved:
                    continue
                if best is None or datastore.free_space_mb > best[1].free_space_mb:
                    best = (node, datastore)

        if best is None:
            raise PlacementError(f"No node has {memory}MB RAM and {footprint}MB of storage available")

        node, datastore = best
        cluster = Cluster(name=node["name"], node=node["name"], datacenter=self.datacenter, resource_pool=node.get("pool"))
        logger.info(f"Placing VM on {cluster.node}/{datastore.name} ({datastore.free_space_mb}MB free)")
        return PlacementDecision(cluster=cluster, datastore=datastore, rules=list(self.rules))
