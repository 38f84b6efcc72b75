from vmprovision.config import Config
from vmprovision.models import ResourceProfile

BYTES_PER_MB = 1024 * 1024


def bytes_to_mb(size: int) -> int:
    """Convert a byte count to whole MB, rounding down."""
    return int(size) // BYTES_PER_MB


def profile_from_config() -> ResourceProfile:
    """Default resource profile from VM_MEMORY_MB, VM_CPUS and VM_DISK_MB."""
    return ResourceProfile(memory_mb=Config.VM_MEMORY_MB, cpu=Config.VM_CPUS, disk_mb=Config.VM_DISK_MB)
