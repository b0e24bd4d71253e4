"""Catalog of remote capabilities and how to detect and install each one."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from ..ssh.commands import RemoteCommand, cmd, shell


class Capability(str, Enum):
    DOCKER = "docker"
    COMPOSE = "compose"
    NGINX = "nginx"


class CapabilityStatus(str, Enum):
    ABSENT = "absent"     # binary missing
    PRESENT = "present"   # binary present and service (if any) running
    BROKEN = "broken"     # binary present but service missing/inactive


@dataclass(frozen=True)
class CapabilityProfile:
    """One canonical detection + install strategy for a capability."""

    capability: Capability
    # any discovery command succeeding means the binary is present
    discovery: Tuple[RemoteCommand, ...]
    # package manager -> candidate packages, tried in order
    packages: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    service_unit: Optional[str] = None
    process_name: Optional[str] = None
    # how to start the service when there is no usable unit
    daemon: Optional[RemoteCommand] = None
    mandatory: bool = True


COMPOSE_V2 = ("docker", "compose")
COMPOSE_V1 = ("docker-compose",)

CATALOG: Dict[Capability, CapabilityProfile] = {
    Capability.DOCKER: CapabilityProfile(
        capability=Capability.DOCKER,
        discovery=(shell('command -v "$1"', "docker"),),
        packages={
            "apt-get": ("docker.io",),
            "dnf": ("moby-engine", "docker"),
            "yum": ("docker",),
            "apk": ("docker",),
        },
        service_unit="docker",
        process_name="dockerd",
        daemon=shell('nohup "$1" >/dev/null 2>&1 &', "dockerd", sudo=True),
    ),
    Capability.COMPOSE: CapabilityProfile(
        capability=Capability.COMPOSE,
        discovery=(cmd(*COMPOSE_V2, "version"), cmd(*COMPOSE_V1, "version")),
        packages={
            "apt-get": ("docker-compose-v2", "docker-compose-plugin", "docker-compose"),
            "dnf": ("docker-compose",),
            "yum": ("docker-compose",),
            "apk": ("docker-cli-compose", "docker-compose"),
        },
    ),
    Capability.NGINX: CapabilityProfile(
        capability=Capability.NGINX,
        discovery=(shell('command -v "$1"', "nginx"),),
        packages={
            "apt-get": ("nginx",),
            "dnf": ("nginx",),
            "yum": ("nginx",),
            "apk": ("nginx",),
        },
        service_unit="nginx",
        process_name="nginx",
        daemon=cmd("nginx", sudo=True),
        mandatory=False,
    ),
}


def capability_profile(capability: Capability) -> CapabilityProfile:
    return CATALOG[capability]
