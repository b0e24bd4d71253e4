"""SSH utilities for shipyard."""

from .commands import RemoteCommand, cmd, join_remote, shell
from .credentials import RemoteTarget, parse_host_spec
from .session import SSHCommandResult, SSHSession
from .probe import RemoteHostFacts, RemoteProbe, has_binary
from .transfer import FileTransfer

__all__ = [
    "RemoteCommand",
    "cmd",
    "join_remote",
    "shell",
    "RemoteTarget",
    "parse_host_spec",
    "SSHCommandResult",
    "SSHSession",
    "RemoteHostFacts",
    "RemoteProbe",
    "has_binary",
    "FileTransfer",
]
