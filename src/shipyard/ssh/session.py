"""SSH session management built on Paramiko."""

from __future__ import annotations

import logging
import shutil
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Union

import paramiko

from ..errors import ConnectError, DeployError, RemoteCommandError, RemoteTimeoutError
from .commands import RemoteCommand
from .credentials import RemoteTarget

logger = logging.getLogger(__name__)

Command = Union[RemoteCommand, str]

UPLOAD_CHUNK_SIZE = 32768


@dataclass
class SSHCommandResult:
    command: str
    stdout: str
    stderr: str
    exit_status: int
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def ssh_failure_hint(error_text: str) -> str:
    lowered = error_text.lower()
    if "no route to host" in lowered:
        return "No route to host. Check VPN/LAN reachability and the --host value."
    if "timed out" in lowered:
        return "SSH timed out. Verify the server is online and the SSH port is reachable."
    if "connection refused" in lowered or "unable to connect" in lowered:
        return "SSH connection refused. Confirm the SSH daemon is running and the port is open."
    if "authentication" in lowered or "permission denied" in lowered:
        return "SSH authentication failed. Verify the key and user with 'ssh -i KEY user@host'."
    if "name or service not known" in lowered or "nodename nor servname" in lowered:
        return "Host resolution failed. Check the host name for typos/DNS issues."
    return ""


class SSHSession:
    """High-level wrapper around paramiko.SSHClient acting as the remote executor."""

    def __init__(
        self,
        target: RemoteTarget,
        *,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
        default_timeout: int = 300,
        poll_interval: float = 0.1,
        command_listener: Optional[Callable[[SSHCommandResult], None]] = None,
    ) -> None:
        self.target = target
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self.command_listener = command_listener
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[paramiko.SSHClient] = None

    @property
    def as_root(self) -> bool:
        return self.target.is_root

    @property
    def connected(self) -> bool:
        return self._client is not None

    def __enter__(self) -> "SSHSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def connect(self) -> None:
        if self._client:
            return
        target = self.target
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        connect_kwargs = {
            "hostname": target.host,
            "port": target.port,
            "username": target.username,
            "timeout": target.timeout,
            "banner_timeout": target.timeout,
            "auth_timeout": target.timeout,
        }
        if target.key_path:
            connect_kwargs["key_filename"] = str(Path(target.key_path).expanduser())
            connect_kwargs["look_for_keys"] = False
            if target.passphrase:
                connect_kwargs["passphrase"] = target.passphrase
        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as exc:
            client.close()
            raise ConnectError(
                f"SSH authentication failed for {target.address}: {exc}",
                step="Connect",
                hint=ssh_failure_hint("authentication"),
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise ConnectError(
                f"Cannot connect to {target.address}: {exc}",
                step="Connect",
                hint=ssh_failure_hint(str(exc)) or "Check the host, port and network path.",
            ) from exc
        logger.debug("Connected to %s", target.address)
        self._client = client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def execute(
        self,
        command: Command,
        *,
        timeout: Optional[float] = None,
        batch_mode: bool = True,
        allocate_pty: bool = False,
        check: bool = False,
        step: Optional[str] = None,
    ) -> SSHCommandResult:
        """
        Execute a command on the remote server and wait for it to finish.

        Args:
            command: Structured command (rendered with sudo when needed) or raw text
            timeout: Total timeout in seconds (default: session default)
            batch_mode: Close stdin immediately so prompts read EOF instead of blocking
            allocate_pty: Request a pseudo terminal; never used for provisioning
            check: Raise RemoteCommandError on a nonzero exit status
            step: Step name attached to raised errors

        Returns:
            SSHCommandResult with command output and exit status
        """
        if not self._client:
            self.connect()
        assert self._client is not None

        if isinstance(command, RemoteCommand):
            rendered = command.render(as_root=self.as_root)
            display = str(command)
        else:
            rendered = display = command
        timeout = timeout or self.default_timeout
        started = time.monotonic()

        try:
            stdin, stdout, stderr = self._client.exec_command(
                rendered, timeout=timeout, get_pty=allocate_pty
            )
        except socket.timeout as exc:
            raise RemoteTimeoutError(display, timeout, step=step) from exc
        except paramiko.SSHException as exc:
            raise ConnectError(
                f"SSH channel failed while running '{display}': {exc}",
                step=step,
                hint="The connection dropped; re-run to resume from the failed step.",
            ) from exc

        if batch_mode:
            stdin.close()

        channel = stdout.channel
        stdout_chunks: List[str] = []
        stderr_chunks: List[str] = []
        deadline = started + timeout
        while not channel.exit_status_ready():
            self._drain(channel, stdout_chunks, stderr_chunks)
            if time.monotonic() > deadline:
                channel.close()
                raise RemoteTimeoutError(display, timeout, step=step)
            time.sleep(self.poll_interval)
        self._drain(channel, stdout_chunks, stderr_chunks)

        result = SSHCommandResult(
            command=display,
            stdout="".join(stdout_chunks).strip(),
            stderr="".join(stderr_chunks).strip(),
            exit_status=channel.recv_exit_status(),
            duration_seconds=time.monotonic() - started,
        )
        logger.debug("$ %s -> exit %s", display, result.exit_status)
        if result.stdout:
            logger.debug("  stdout: %s", result.stdout[-2000:])
        if result.stderr:
            logger.debug("  stderr: %s", result.stderr[-2000:])
        if self.command_listener:
            self.command_listener(result)

        if check and not result.ok:
            raise RemoteCommandError(
                display, result.exit_status, result.stderr or result.stdout, step=step
            )
        return result

    def upload(self, local_path: Path, remote_path: str, mode: int = 0o600) -> None:
        """Copy a local file to ``remote_path`` over SFTP.

        The remote file gets ``mode`` while it is still empty, so the content is
        never readable with the server's default permissions.
        """

        def copy(sftp: paramiko.SFTPClient) -> None:
            with open(local_path, "rb") as source, sftp.open(remote_path, "wb") as handle:
                sftp.chmod(remote_path, mode)
                shutil.copyfileobj(source, handle, UPLOAD_CHUNK_SIZE)

        self._sftp_call(f"sftp put {local_path} {remote_path}", copy)

    def put_text(self, content: str, remote_path: str, mode: int = 0o600) -> None:
        """Write ``content`` to ``remote_path`` over SFTP with the given mode."""

        def write(sftp: paramiko.SFTPClient) -> None:
            with sftp.open(remote_path, "w") as handle:
                sftp.chmod(remote_path, mode)
                handle.write(content)

        self._sftp_call(f"sftp write {remote_path}", write)

    def _sftp_call(self, description: str, action: Callable[[paramiko.SFTPClient], object]) -> None:
        if not self._client:
            self.connect()
        assert self._client is not None
        started = time.monotonic()
        try:
            sftp = self._client.open_sftp()
        except paramiko.SSHException as exc:
            raise ConnectError(f"Cannot open SFTP channel: {exc}", step="Transfer") from exc
        try:
            action(sftp)
        except (OSError, paramiko.SSHException) as exc:
            raise DeployError(
                f"File transfer failed ({description}): {exc}",
                step="Transfer",
                hint="Check free space in /tmp on the host and that the SFTP subsystem is enabled.",
            ) from exc
        finally:
            sftp.close()
        logger.debug("%s done", description)
        if self.command_listener:
            self.command_listener(
                SSHCommandResult(
                    command=description,
                    stdout="",
                    stderr="",
                    exit_status=0,
                    duration_seconds=time.monotonic() - started,
                )
            )

    @staticmethod
    def _drain(channel, stdout_chunks: List[str], stderr_chunks: List[str]) -> None:
        while channel.recv_ready():
            stdout_chunks.append(channel.recv(4096).decode("utf-8", errors="replace"))
        while channel.recv_stderr_ready():
            stderr_chunks.append(channel.recv_stderr(4096).decode("utf-8", errors="replace"))
