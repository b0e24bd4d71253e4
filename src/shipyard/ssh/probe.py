"""Remote host probing utilities."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from io import StringIO
from typing import Optional

from dotenv import dotenv_values

from .commands import cmd, shell
from .session import SSHSession

PACKAGE_MANAGERS = ("apt-get", "dnf", "yum", "apk")


def has_binary(session: SSHSession, name: str, step: Optional[str] = None) -> bool:
    """True when ``name`` resolves on the remote PATH."""
    return session.execute(shell('command -v "$1"', name), step=step).ok


@dataclass
class RemoteHostFacts:
    hostname: str
    kernel: str
    architecture: str
    os_release: str
    package_manager: Optional[str] = None
    has_systemd: bool = False   # PID 1 是否是 systemd
    is_container: bool = False  # 是否在容器中运行

    def to_payload(self) -> dict:
        return asdict(self)


class RemoteProbe:
    """Collects remote host facts by running read-only commands."""

    def __init__(self, step: str = "Connect") -> None:
        self.step = step

    def collect(self, session: SSHSession) -> RemoteHostFacts:
        hostname = self._safe_run(session, cmd("hostname"))
        kernel = self._safe_run(session, cmd("uname", "-sr"))
        architecture = self._safe_run(session, cmd("uname", "-m"))
        os_release = self._os_release(session)

        return RemoteHostFacts(
            hostname=hostname or "unknown",
            kernel=kernel or "unknown",
            architecture=architecture or "unknown",
            os_release=os_release or kernel or "unknown",
            package_manager=self.detect_package_manager(session),
            has_systemd=self._detect_systemd(session),
            is_container=self._detect_container(session),
        )

    def detect_package_manager(self, session: SSHSession) -> Optional[str]:
        for manager in PACKAGE_MANAGERS:
            if has_binary(session, manager, step=self.step):
                return manager
        return None

    def _safe_run(self, session: SSHSession, command) -> str:
        result = session.execute(command, step=self.step)
        return result.stdout if result.ok else ""

    def _os_release(self, session: SSHSession) -> str:
        text = self._safe_run(session, cmd("cat", "/etc/os-release"))
        if not text:
            return ""
        values = dotenv_values(stream=StringIO(text))
        return values.get("PRETTY_NAME") or values.get("NAME") or ""

    def _detect_systemd(self, session: SSHSession) -> bool:
        comm = self._safe_run(session, cmd("cat", "/proc/1/comm"))
        return comm.strip() == "systemd"

    def _detect_container(self, session: SSHSession) -> bool:
        # 方法 1: /.dockerenv
        if session.execute(cmd("test", "-f", "/.dockerenv"), step=self.step).ok:
            return True
        # 方法 2: /proc/1/cgroup
        cgroup = self._safe_run(session, cmd("cat", "/proc/1/cgroup"))
        return any(marker in cgroup for marker in ("docker", "containerd", "lxc"))
