"""Single-VM provisioning on a Proxmox VE cluster with rollback on failure."""

__version__ = "0.1.0"
