"""Install and repair remote capabilities."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from ..errors import DeployError, RemoteCommandError
from ..ssh.commands import RemoteCommand, cmd, join_remote
from ..ssh.probe import RemoteHostFacts
from ..ssh.session import SSHSession
from .capabilities import Capability, CapabilityStatus, capability_profile
from .probe import CapabilityProbe

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
SYSTEMD_UNIT_DIR = "/etc/systemd/system"

SERVICE_UNIT_TEMPLATE = """[Unit]
Description={description}
Requires={requires}
After={requires} network-online.target

[Service]
Type=oneshot
RemainAfterExit=yes
WorkingDirectory={working_dir}
ExecStart={start}
ExecStop={stop}

[Install]
WantedBy=multi-user.target
"""


def install_commands(package_manager: str, package: str) -> List[RemoteCommand]:
    """Non-interactive install of ``package`` with ``package_manager``."""
    if package_manager == "apt-get":
        return [
            cmd(
                "apt-get",
                "install",
                "-y",
                "-o",
                "Dpkg::Options::=--force-confdef",
                "-o",
                "Dpkg::Options::=--force-confold",
                package,
                sudo=True,
                env=APT_ENV,
            )
        ]
    if package_manager in ("dnf", "yum"):
        return [cmd(package_manager, "install", "-y", package, sudo=True)]
    if package_manager == "apk":
        return [cmd("apk", "add", "--no-cache", package, sudo=True)]
    raise ValueError(f"unsupported package manager: {package_manager}")


class Provisioner:
    """Brings a capability to the Present state: install when absent, repair when broken."""

    def __init__(
        self,
        probe: Optional[CapabilityProbe] = None,
        *,
        install_timeout: int = 900,
        command_timeout: int = 300,
        settle_attempts: int = 5,
        settle_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        step: str = "Provision",
    ) -> None:
        self.probe = probe or CapabilityProbe(step=step)
        self.install_timeout = install_timeout
        self.command_timeout = command_timeout
        self.settle_attempts = settle_attempts
        self.settle_seconds = settle_seconds
        self.sleep = sleep
        self.step = step
        self._index_refreshed = False

    def ensure(
        self,
        session: SSHSession,
        capability: Capability,
        facts: RemoteHostFacts,
        force: bool = False,
    ) -> CapabilityStatus:
        """Return the terminal status of ``capability`` after install/repair attempts."""
        status = self.probe.probe(session, capability, facts)
        if status is CapabilityStatus.PRESENT and not force:
            logger.info("%s already present", capability.value)
            return status

        if status is CapabilityStatus.ABSENT or force:
            if not self._install(session, capability, facts):
                return self.probe.probe(session, capability, facts)
            status = self.probe.probe(session, capability, facts)

        if status is CapabilityStatus.BROKEN:
            self._repair(session, capability, facts)
            status = self._wait_for_present(session, capability, facts)

        if status is CapabilityStatus.PRESENT:
            logger.info("%s is present", capability.value)
        else:
            logger.error("%s is %s after provisioning", capability.value, status.value)
        return status

    def install_service_unit(
        self,
        session: SSHSession,
        name: str,
        *,
        description: str,
        working_dir: str,
        start: str,
        stop: str,
        facts: RemoteHostFacts,
    ) -> bool:
        """Install and enable a oneshot systemd unit wrapping the application."""
        if not facts.has_systemd:
            logger.warning("Host has no systemd; skipping service unit %s", name)
            return False
        unit_path = join_remote(SYSTEMD_UNIT_DIR, f"{name}.service")
        content = SERVICE_UNIT_TEMPLATE.format(
            description=description,
            requires="docker.service",
            working_dir=working_dir,
            start=start,
            stop=stop,
        )
        staging = f"/tmp/shipyard-{name}.service"
        try:
            session.put_text(content, staging, mode=0o644)
            for command in (
                cmd("install", "-m", "644", staging, unit_path, sudo=True),
                cmd("systemctl", "daemon-reload", sudo=True),
                cmd("systemctl", "enable", f"{name}.service", sudo=True),
            ):
                session.execute(command, check=True, timeout=self.command_timeout, step="Service")
        finally:
            session.execute(cmd("rm", "-f", staging), timeout=self.command_timeout, step="Service")
        logger.info("Installed systemd unit %s", unit_path)
        return True

    def _install(
        self, session: SSHSession, capability: Capability, facts: RemoteHostFacts
    ) -> bool:
        profile = capability_profile(capability)
        manager = facts.package_manager
        if not manager or manager not in profile.packages:
            logger.error(
                "No supported package manager found to install %s (detected: %s)",
                capability.value,
                manager or "none",
            )
            return False

        self._refresh_index(session, manager)
        for package in profile.packages[manager]:
            logger.info("Installing %s via %s (%s)", capability.value, manager, package)
            try:
                for command in install_commands(manager, package):
                    session.execute(
                        command, check=True, timeout=self.install_timeout, step=self.step
                    )
            except RemoteCommandError as exc:
                logger.warning("Package %s could not be installed: %s", package, exc.message)
                continue
            return True
        return False

    def _refresh_index(self, session: SSHSession, manager: str) -> None:
        if manager != "apt-get" or self._index_refreshed:
            return
        try:
            session.execute(
                cmd("apt-get", "update", sudo=True, env=APT_ENV),
                check=True,
                timeout=self.install_timeout,
                step=self.step,
            )
        except RemoteCommandError as exc:
            # 部分源失败时仍然可以尝试安装
            logger.warning("apt-get update failed: %s", exc.message)
        self._index_refreshed = True

    def _repair(
        self, session: SSHSession, capability: Capability, facts: RemoteHostFacts
    ) -> None:
        profile = capability_profile(capability)
        if profile.service_unit and self.probe.unit_exists(session, profile.service_unit, facts):
            logger.info("Enabling and starting %s.service", profile.service_unit)
            result = session.execute(
                cmd("systemctl", "enable", "--now", profile.service_unit, sudo=True),
                timeout=self.command_timeout,
                step=self.step,
            )
            if result.ok:
                return
            logger.warning("systemctl could not start %s: %s", profile.service_unit, result.stderr)
        if profile.daemon is None:
            raise DeployError(
                f"Don't know how to start {capability.value} without a service unit",
                step=self.step,
            )
        logger.info("Starting %s directly (no usable service unit)", capability.value)
        session.execute(profile.daemon, timeout=self.command_timeout, step=self.step)

    def _wait_for_present(
        self, session: SSHSession, capability: Capability, facts: RemoteHostFacts
    ) -> CapabilityStatus:
        status = self.probe.probe(session, capability, facts)
        for _ in range(self.settle_attempts - 1):
            if status is CapabilityStatus.PRESENT:
                break
            self.sleep(self.settle_seconds)
            status = self.probe.probe(session, capability, facts)
        return status
