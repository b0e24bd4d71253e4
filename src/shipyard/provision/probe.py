"""Read-only capability discovery on the remote host."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..ssh.commands import cmd
from ..ssh.probe import RemoteHostFacts
from ..ssh.session import SSHSession
from .capabilities import (
    COMPOSE_V1,
    COMPOSE_V2,
    Capability,
    CapabilityProfile,
    CapabilityStatus,
    capability_profile,
)

logger = logging.getLogger(__name__)


class CapabilityProbe:
    """Checks whether a capability is present. Never mutates remote state.

    Results are not cached: every call asks the host again, because a
    provisioning step in between may have changed the answer.
    """

    def __init__(self, step: str = "Provision") -> None:
        self.step = step

    def probe(
        self, session: SSHSession, capability: Capability, facts: RemoteHostFacts
    ) -> CapabilityStatus:
        profile = capability_profile(capability)
        if not self._binary_present(session, profile):
            status = CapabilityStatus.ABSENT
        elif profile.service_unit is None or self.service_running(session, profile, facts):
            status = CapabilityStatus.PRESENT
        else:
            status = CapabilityStatus.BROKEN
        logger.debug("Capability %s: %s", capability.value, status.value)
        return status

    def compose_command(self, session: SSHSession) -> Optional[Tuple[str, ...]]:
        """Return the argv prefix that invokes Compose on this host."""
        for prefix in (COMPOSE_V2, COMPOSE_V1):
            if session.execute(cmd(*prefix, "version"), step=self.step).ok:
                return prefix
        return None

    def unit_exists(self, session: SSHSession, unit: str, facts: RemoteHostFacts) -> bool:
        if not facts.has_systemd:
            return False
        result = session.execute(
            cmd("systemctl", "list-unit-files", f"{unit}.service", "--no-legend", "--no-pager"),
            step=self.step,
        )
        return result.ok and bool(result.stdout.strip())

    def service_running(
        self, session: SSHSession, profile: CapabilityProfile, facts: RemoteHostFacts
    ) -> bool:
        if profile.service_unit and self.unit_exists(session, profile.service_unit, facts):
            active = session.execute(
                cmd("systemctl", "is-active", "--quiet", profile.service_unit), step=self.step
            )
            if active.ok:
                return True
        if profile.process_name:
            # 没有 systemd 单元时（例如容器内），看进程是否在跑
            return session.execute(cmd("pgrep", "-x", profile.process_name), step=self.step).ok
        return False

    def _binary_present(self, session: SSHSession, profile: CapabilityProfile) -> bool:
        return any(session.execute(command, step=self.step).ok for command in profile.discovery)
