"""Structured remote command builder.

Remote commands are kept as argv tuples and only turned into shell text at the
last moment with ``shlex.join``, so every interpolated value is quoted as data.
Where a shell feature is genuinely needed (backgrounding, redirection) the
template is a fixed string and the values travel as positional parameters.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class RemoteCommand:
    argv: Tuple[str, ...]
    sudo: bool = False
    env: Tuple[Tuple[str, str], ...] = ()

    def render(self, as_root: bool = False) -> str:
        parts = []
        if self.sudo and not as_root:
            # -n: 需要密码时直接失败，而不是卡在提示符上
            parts.extend(["sudo", "-n"])
        if self.env:
            parts.append("env")
            parts.extend(f"{key}={value}" for key, value in self.env)
        parts.extend(self.argv)
        return shlex.join(parts)

    @property
    def program(self) -> str:
        return self.argv[0] if self.argv else ""

    def __str__(self) -> str:
        return self.render()


def cmd(*argv: object, sudo: bool = False, env: Optional[Dict[str, str]] = None) -> RemoteCommand:
    if not argv:
        raise ValueError("a remote command needs at least a program name")
    return RemoteCommand(
        argv=tuple(str(arg) for arg in argv),
        sudo=sudo,
        env=tuple(sorted((env or {}).items())),
    )


def shell(template: str, *args: object, sudo: bool = False) -> RemoteCommand:
    """Run a fixed ``sh -c`` template; ``args`` are available as "$1", "$2", ..."""
    return RemoteCommand(
        argv=("sh", "-c", template, "sh", *(str(arg) for arg in args)),
        sudo=sudo,
    )


def join_remote(*parts: str) -> str:
    """Join POSIX path segments for the remote host regardless of local OS."""
    cleaned = [parts[0].rstrip("/")] + [p.strip("/") for p in parts[1:] if p]
    return "/".join(cleaned) or "/"
