from vmprovision.models import Datastore, Device, DeviceChange, DeviceKind, DeviceOperation

EPHEMERAL_DISK_KEY = -1


class EphemeralDiskPlanner:
    """Builds the device change that creates a VM's ephemeral disk."""

    def build_attach_spec(self, size_mb: int, name: str, datastore: Datastore, controller_key: int) -> DeviceChange:
        """
        Create a new disk on ``datastore`` attached to the system disk's controller.

        The unit number is left unset; it is assigned when the whole change
        set is normalized.
        """
        device = Device(
            key=EPHEMERAL_DISK_KEY,
            kind=DeviceKind.DISK,
            label="",
            controller_key=controller_key,
            backing={"storage": datastore.name, "size_mb": size_mb, "name": f"{name}-ephemeral"},
        )
        return DeviceChange(operation=DeviceOperation.ADD, device=device, file_operation="create")
