import logging
from typing import Any, Dict, List, Optional

from proxmoxer import ProxmoxAPI

from vmprovision.config import Config

logger = logging.getLogger(__name__)


class ProxmoxClient:
    """Wrapper around the Proxmox API connection built from an API token."""

    def __init__(self, host: Optional[str] = None, verify_ssl: Optional[bool] = None) -> None:
        self.host = host or Config.API_HOST
        if verify_ssl is None:
            verify_ssl = Config.VERIFY_SSL

        # Extract API token components
        if Config.API_TOKEN is None:
            raise ValueError("API_TOKEN environment variable is not set")
        user_token, self.api_token = Config.API_TOKEN.split("=", 1)
        self.user, self.token_name = user_token.split("!")

        logger.debug(f"Connecting to {self.host} as {self.user}!{self.token_name}")
        self.proxmox = ProxmoxAPI(
            self.host, user=self.user, token_name=self.token_name, token_value=self.api_token, verify_ssl=verify_ssl
        )

    def online_nodes(self) -> List[str]:
        """Names of cluster nodes currently reporting as online."""
        return [n["node"] for n in self.proxmox.nodes.get() if n.get("status") == "online"]

    def get_node_status(self, node: str) -> Dict[str, Any]:
        """Retrieve node status information."""
        return self.proxmox.nodes(node).status.get()  # type: ignore[no-any-return]
