"""Exceptions raised while provisioning a VM."""


class ProvisioningError(Exception):
    """Base exception for provisioning errors."""

    pass


class ImageNotFound(ProvisioningError):
    """Raised when the base image cannot be located."""

    pass


class DeviceNotFound(ProvisioningError):
    """Raised when a cloned VM lacks a device the base image must provide."""

    pass


class NetworkNotFound(ProvisioningError):
    """Raised when a requested provider network does not exist."""

    pass


class PropertyReadError(ProvisioningError):
    """Raised when a property read does not return every requested property."""

    pass


class PlacementError(ProvisioningError):
    """Raised when no node/storage combination can hold the VM."""

    pass


class TaskError(ProvisioningError):
    """Raised when an asynchronous Proxmox task fails or times out."""

    def __init__(self, upid: str, message: str):
        super().__init__(f"Task {upid} failed: {message}")
        self.upid = upid


class UnsupportedRuleCardinality(ProvisioningError):
    """Raised when more than one anti-affinity rule is configured."""

    pass


class UnsupportedRuleType(ProvisioningError):
    """Raised when an anti-affinity rule is not of the 'separate_vms' type."""

    pass
