"""Anti-affinity rules keeping provisioned VMs on separate hosts."""

import logging
from typing import Any, List, Optional

from vmprovision.errors import UnsupportedRuleCardinality, UnsupportedRuleType
from vmprovision.models import SEPARATE_VMS, AntiAffinityRule, Cluster, MachineHandle

logger = logging.getLogger(__name__)


def apply_anti_affinity(
    rules: Optional[List[AntiAffinityRule]],
    applier: Any,
    client: Any,
    cluster: Cluster,
    handle: MachineHandle,
) -> None:
    """Add a VM to the single configured anti-affinity rule, if any.

    Raises:
        UnsupportedRuleCardinality: more than one rule is configured
        UnsupportedRuleType: the rule is not of the 'separate_vms' type
    """
    if not rules:
        return

    if len(rules) > 1:
        raise UnsupportedRuleCardinality("Only one anti-affinity rule per resource pool is supported")

    rule = rules[0]
    if rule.type != SEPARATE_VMS:
        raise UnsupportedRuleType(f"Only anti-affinity rules of '{SEPARATE_VMS}' type are supported, got {rule.type!r}")

    applier.add_machine(rule.name, client, cluster, handle)


class HaRuleApplier:
    """Maintains Proxmox HA resource-affinity rules with negative affinity."""

    def add_machine(self, rule_name: str, client: Any, cluster: Cluster, handle: MachineHandle) -> None:
        """
        Add a VM to the named rule, creating the rule if it does not exist.

        Args:
            rule_name: HA rule identifier
            client: ProxmoxAPI instance
            cluster: Placement target the rule is scoped to
            handle: VM to add
        """
        sid = f"vm:{handle.vmid}"
        self._ensure_ha_resource(client, sid)

        existing = self._find_rule(client, rule_name)
        if existing is None:
            logger.info(f"Creating anti-affinity rule {rule_name!r} in {cluster.datacenter.name} with {sid}")
            client.cluster.ha.rules.post(
                rule=rule_name,
                type="resource-affinity",
                affinity="negative",
                resources=sid,
                comment=f"vmprovision anti-affinity for pool {cluster.resource_pool or cluster.node}",
            )
            return

        resources = [r.strip() for r in existing.get("resources", "").split(",") if r.strip()]
        if sid in resources:
            logger.info(f"{sid} already in anti-affinity rule {rule_name!r}")
            return

        resources.append(sid)
        logger.info(f"Adding {sid} to anti-affinity rule {rule_name!r}")
        client.cluster.ha.rules(rule_name).put(type="resource-affinity", resources=",".join(resources))

    @staticmethod
    def _find_rule(client: Any, rule_name: str) -> Optional[dict]:
        for rule in client.cluster.ha.rules.get():
            if rule.get("rule") == rule_name:
                return rule
        return None

    @staticmethod
    def _ensure_ha_resource(client: Any, sid: str) -> None:
        for resource in client.cluster.ha.resources.get():
            if resource.get("sid") == sid:
                return
        client.cluster.ha.resources.post(sid=sid, state="started")
