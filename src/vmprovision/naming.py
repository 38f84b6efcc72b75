import uuid

from vmprovision.config import Config


def generate_unique_name() -> str:
    """Return a random, collision-resistant identifier."""
    return str(uuid.uuid4())


def machine_name(unique: str) -> str:
    """VM name for a unique identifier, e.g. 'vm-3f1c...'."""
    return f"{Config.VM_NAME_PREFIX}{unique}"
