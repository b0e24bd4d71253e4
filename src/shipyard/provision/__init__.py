"""Remote capability discovery and provisioning."""

from .capabilities import CATALOG, Capability, CapabilityProfile, CapabilityStatus, capability_profile
from .probe import CapabilityProbe
from .provisioner import Provisioner, install_commands

__all__ = [
    "CATALOG",
    "Capability",
    "CapabilityProfile",
    "CapabilityStatus",
    "capability_profile",
    "CapabilityProbe",
    "Provisioner",
    "install_commands",
]
