import os
from typing import Any, Dict, List

from dotenv import load_dotenv


class Config:
    """Loads and manages configuration from environment variables."""

    load_dotenv()

    API_TOKEN = os.getenv("API_TOKEN")
    API_HOST = os.getenv("API_HOST", "pve")
    VERIFY_SSL = os.getenv("VERIFY_SSL", "false").lower() in ("1", "true", "yes")
    DATACENTER = os.getenv("DATACENTER", "homelab")

    VM_NAME_PREFIX = os.getenv("VM_NAME_PREFIX", "vm-")
    VM_MEMORY_MB = int(os.getenv("VM_MEMORY_MB", "2048"))
    VM_CPUS = int(os.getenv("VM_CPUS", "2"))
    VM_DISK_MB = int(os.getenv("VM_DISK_MB", "10240"))
    VM_NIC_MODEL = os.getenv("VM_NIC_MODEL", "virtio")

    TASK_TIMEOUT = int(os.getenv("TASK_TIMEOUT", "300"))
    TASK_POLL_INTERVAL = float(os.getenv("TASK_POLL_INTERVAL", "2"))

    # Cloud-init snippets holding the agent environment
    SNIPPETS_STORAGE = os.getenv("SNIPPETS_STORAGE", "local")
    SNIPPETS_DIR = os.getenv("SNIPPETS_DIR", "/var/lib/vz/snippets")

    SSH_USER = os.getenv("SSH_USER", "root")
    SSH_KEY_PATH = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))

    @staticmethod
    def get_nodes() -> List[Dict[str, Any]]:
        """Dynamically loads placement candidates from environment variables.

        Each NODE_<n> may carry a comma-separated STORAGE_<n> list and an
        optional resource pool POOL_<n>.
        """
        nodes = []
        index = 1
        while os.getenv(f"NODE_{index}"):
            storages = os.getenv(f"STORAGE_{index}", "")
            nodes.append(
                {
                    "name": os.getenv(f"NODE_{index}"),
                    "storages": [s.strip() for s in storages.split(",") if s.strip()],
                    "pool": os.getenv(f"POOL_{index}") or None,
                }
            )
            index += 1
        return nodes

    @staticmethod
    def get_anti_affinity_rules() -> List[Dict[str, str]]:
        """
        Reads ANTI_AFFINITY_RULE (comma-separated rule names) and
        ANTI_AFFINITY_TYPE, returning one dict per rule name.
        """
        raw = os.getenv("ANTI_AFFINITY_RULE", "")
        rule_type = os.getenv("ANTI_AFFINITY_TYPE", "separate_vms")
        return [{"name": name.strip(), "type": rule_type} for name in raw.split(",") if name.strip()]
