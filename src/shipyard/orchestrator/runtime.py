"""Container runtimes: how an application is built, started and put back."""

from __future__ import annotations

import copy
import json
import logging
import secrets
import shlex
from typing import Dict, List, Optional, Sequence, Tuple

from ..analyzer import BuildManifest
from ..ssh.commands import RemoteCommand, cmd, join_remote
from ..ssh.session import SSHCommandResult, SSHSession
from .models import DeploymentConfig, RuntimeKind, Snapshot

logger = logging.getLogger(__name__)

ROLLBACK_OVERRIDE = "compose.rollback.json"


class ApplicationRuntime:
    """Common plumbing for the Dockerfile and Compose runtimes."""

    kind: RuntimeKind

    def __init__(
        self,
        session: SSHSession,
        config: DeploymentConfig,
        manifest_path: str,
        *,
        release_dir: Optional[str] = None,
        command_timeout: int = 300,
        build_timeout: int = 1800,
    ) -> None:
        self.session = session
        self.config = config
        self.manifest_path = manifest_path
        self.command_timeout = command_timeout
        self.build_timeout = build_timeout
        self.release_dir = release_dir or config.current_link
        self.remote_src = join_remote(self.release_dir, "src")
        self.env_file = join_remote(self.release_dir, ".env") if config.env_file else None

    @property
    def app_name(self) -> str:
        return self.config.app_name

    def build_commands(self) -> List[RemoteCommand]:
        raise NotImplementedError

    def run_commands(self, local_only: bool = True) -> List[RemoteCommand]:
        raise NotImplementedError

    def capture(self, step: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(image_ref, container_id)`` of what is deployed right now."""
        raise NotImplementedError

    def run(self, local_only: bool = True, step: Optional[str] = None) -> None:
        raise NotImplementedError

    def is_running(self, step: Optional[str] = None) -> bool:
        raise NotImplementedError

    def restore(self, snapshot: Snapshot, step: Optional[str] = None) -> None:
        raise NotImplementedError

    def discard(self, snapshot: Snapshot, step: Optional[str] = None) -> None:
        raise NotImplementedError

    def service_commands(self) -> Tuple[str, str]:
        """Start/stop command lines for a systemd unit."""
        raise NotImplementedError

    def build(self, step: Optional[str] = None) -> None:
        for command in self.build_commands():
            self._exec(command, check=True, timeout=self.build_timeout, step=step)

    def _exec(
        self,
        command: RemoteCommand,
        *,
        check: bool = False,
        timeout: Optional[int] = None,
        step: Optional[str] = None,
    ) -> SSHCommandResult:
        return self.session.execute(
            command, check=check, timeout=timeout or self.command_timeout, step=step
        )

    def _container_running(self, ref: str, step: Optional[str]) -> bool:
        result = self._exec(cmd("docker", "inspect", "--format", "{{.State.Running}}", ref, sudo=True), step=step)
        return result.ok and result.stdout.strip() == "true"

    @staticmethod
    def _unit_line(argv: Sequence[str]) -> str:
        # systemd 需要可执行文件的绝对路径
        return shlex.join(["/usr/bin/env", *argv])


class ContainerRuntime(ApplicationRuntime):
    """Single container built from a Dockerfile."""

    kind = RuntimeKind.CONTAINER

    @property
    def image(self) -> str:
        return f"{self.app_name}:latest"

    @property
    def container(self) -> str:
        return self.app_name

    @property
    def previous_container(self) -> str:
        return f"{self.app_name}-previous"

    def build_commands(self) -> List[RemoteCommand]:
        dockerfile = join_remote(self.remote_src, self.manifest_path)
        return [cmd("docker", "build", "-t", self.image, "-f", dockerfile, self.remote_src, sudo=True)]

    def run_commands(self, local_only: bool = True) -> List[RemoteCommand]:
        port = self.config.app_port
        publish = f"127.0.0.1:{port}:{port}" if local_only else f"{port}:{port}"
        argv = ["docker", "run", "-d", "--name", self.container, "--restart", "unless-stopped", "-p", publish]
        if self.env_file:
            argv += ["--env-file", self.env_file]
        argv.append(self.image)
        return [cmd(*argv, sudo=True)]

    def capture(self, step: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
        result = self._exec(
            cmd("docker", "inspect", "--format", "{{.Id}} {{.Image}}", self.container, sudo=True),
            step=step,
        )
        if not result.ok or not result.stdout.strip():
            return None, None
        container_id, _, image_id = result.stdout.strip().partition(" ")
        return image_id or None, container_id or None

    def run(self, local_only: bool = True, step: Optional[str] = None) -> None:
        _, current = self.capture(step=step)
        # 上一轮遗留的备份容器
        self._exec(cmd("docker", "rm", "-f", self.previous_container, sudo=True), step=step)
        if current:
            self._exec(cmd("docker", "stop", self.container, sudo=True), check=True, step=step)
            self._exec(
                cmd("docker", "rename", self.container, self.previous_container, sudo=True),
                check=True,
                step=step,
            )
        for command in self.run_commands(local_only):
            self._exec(command, check=True, step=step)

    def is_running(self, step: Optional[str] = None) -> bool:
        return self._container_running(self.container, step)

    def restore(self, snapshot: Snapshot, step: Optional[str] = None) -> None:
        previous = snapshot.previous_container_id
        _, current = self.capture(step=step)
        if previous and current == previous:
            # 旧容器还没被替换，只需要确保它在运行
            self._exec(cmd("docker", "start", self.container, sudo=True), check=True, step=step)
            return
        if current:
            self._exec(cmd("docker", "rm", "-f", self.container, sudo=True), check=True, step=step)
        if previous:
            self._exec(cmd("docker", "rename", previous, self.container, sudo=True), check=True, step=step)
            self._exec(cmd("docker", "start", self.container, sudo=True), check=True, step=step)

    def discard(self, snapshot: Snapshot, step: Optional[str] = None) -> None:
        self._exec(cmd("docker", "rm", "-f", self.previous_container, sudo=True), step=step)

    def service_commands(self) -> Tuple[str, str]:
        return (
            self._unit_line(["docker", "start", self.container]),
            self._unit_line(["docker", "stop", self.container]),
        )


class ComposeRuntime(ApplicationRuntime):
    """Multi-service project described by a compose file."""

    kind = RuntimeKind.COMPOSE

    def __init__(self, *args, compose_command: Sequence[str] = ("docker", "compose"), **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.compose_command = tuple(compose_command)
        self.override_path = join_remote(self.config.state_dir, ROLLBACK_OVERRIDE)

    @property
    def compose_path(self) -> str:
        return join_remote(self.remote_src, self.manifest_path)

    def rollback_tag(self, service: str) -> str:
        return f"{self.app_name}-rollback-{service}:previous"

    def compose(self, *args: str, extra_files: Sequence[str] = ()) -> RemoteCommand:
        argv = [*self.compose_command, "-p", self.app_name, "-f", self.compose_path]
        for path in extra_files:
            argv += ["-f", path]
        if self.env_file:
            argv += ["--env-file", self.env_file]
        return cmd(*argv, *args, sudo=True)

    def build_commands(self) -> List[RemoteCommand]:
        return [self.compose("build")]

    def run_commands(self, local_only: bool = True) -> List[RemoteCommand]:
        # 端口映射由 compose 文件决定
        return [self.compose("up", "-d", "--remove-orphans")]

    def service_images(self, step: Optional[str] = None) -> Dict[str, Tuple[str, str]]:
        """service -> (container_id, image_id) for the project's containers."""
        listing = self._exec(self.compose("ps", "-q"), step=step)
        if not listing.ok:
            return {}
        services: Dict[str, Tuple[str, str]] = {}
        for container_id in listing.stdout.split():
            inspect = self._exec(
                cmd(
                    "docker",
                    "inspect",
                    "--format",
                    '{{index .Config.Labels "com.docker.compose.service"}} {{.Image}}',
                    container_id,
                    sudo=True,
                ),
                step=step,
            )
            service, _, image_id = inspect.stdout.strip().partition(" ")
            if inspect.ok and service and image_id:
                services[service] = (container_id, image_id)
        return services

    def capture(self, step: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
        services = self.service_images(step=step)
        if not services:
            return None, None
        refs = []
        for service, (_, image_id) in sorted(services.items()):
            tag = self.rollback_tag(service)
            # 打标签防止旧镜像在 build 之后变成悬空镜像被清理
            self._exec(cmd("docker", "tag", image_id, tag, sudo=True), check=True, step=step)
            refs.append(f"{service}={tag}")
        containers = ",".join(container_id for container_id, _ in services.values())
        return ",".join(refs), containers

    def run(self, local_only: bool = True, step: Optional[str] = None) -> None:
        for command in self.run_commands(local_only):
            self._exec(command, check=True, step=step)

    def is_running(self, step: Optional[str] = None) -> bool:
        listing = self._exec(self.compose("ps", "-q"), step=step)
        ids = listing.stdout.split() if listing.ok else []
        if not ids:
            return False
        return all(self._container_running(container_id, step) for container_id in ids)

    def for_release(self, release_dir: str, env_file: Optional[str]) -> "ComposeRuntime":
        """The same project, read from another release's compose file and env."""
        other = copy.copy(self)
        other.release_dir = release_dir
        other.remote_src = join_remote(release_dir, "src")
        other.env_file = env_file
        return other

    def restore(self, snapshot: Snapshot, step: Optional[str] = None) -> None:
        pinned = parse_image_refs(snapshot.previous_image_ref)
        if not pinned:
            self._exec(self.compose("down", "--remove-orphans"), check=True, step=step)
            return
        target = self
        if snapshot.previous_release_dir:
            target = self.for_release(snapshot.previous_release_dir, snapshot.previous_env_file)
        target._pin(pinned, step)

    def _pin(self, pinned: Dict[str, str], step: Optional[str]) -> None:
        override = {"services": {service: {"image": ref} for service, ref in pinned.items()}}
        staging = f"/tmp/shipyard-{self.app_name}-{secrets.token_hex(4)}.json"
        try:
            # JSON 也是合法的 YAML，compose 可以直接读
            self.session.put_text(json.dumps(override, indent=2), staging, mode=0o644)
            self._exec(cmd("mkdir", "-p", self.config.state_dir, sudo=True), check=True, step=step)
            self._exec(cmd("install", "-m", "644", staging, self.override_path, sudo=True), check=True, step=step)
        finally:
            self._exec(cmd("rm", "-f", staging), step=step)
        self._exec(
            self.compose("up", "-d", "--no-build", "--remove-orphans", extra_files=[self.override_path]),
            check=True,
            step=step,
        )

    def discard(self, snapshot: Snapshot, step: Optional[str] = None) -> None:
        for ref in parse_image_refs(snapshot.previous_image_ref).values():
            self._exec(cmd("docker", "rmi", ref, sudo=True), step=step)
        self._exec(cmd("rm", "-f", self.override_path, sudo=True), step=step)

    def service_commands(self) -> Tuple[str, str]:
        # 走 current 软链接，回滚后 unit 依然指向活动的 release
        current = self.config.current_link
        base = [*self.compose_command, "-p", self.app_name, "-f", join_remote(current, "src", self.manifest_path)]
        if self.env_file:
            base += ["--env-file", join_remote(current, ".env")]
        return self._unit_line([*base, "up", "-d"]), self._unit_line([*base, "stop"])


def parse_image_refs(value: Optional[str]) -> Dict[str, str]:
    """Parse ``svc=ref,svc2=ref2`` as stored in the snapshot record."""
    pinned: Dict[str, str] = {}
    for item in (value or "").split(","):
        service, sep, ref = item.partition("=")
        if sep and service and ref:
            pinned[service] = ref
    return pinned


def runtime_for(
    session: SSHSession,
    config: DeploymentConfig,
    manifest: BuildManifest,
    *,
    compose_command: Sequence[str] = (),
    release_dir: Optional[str] = None,
    command_timeout: int = 300,
    build_timeout: int = 1800,
) -> ApplicationRuntime:
    if manifest.is_compose:
        return ComposeRuntime(
            session,
            config,
            manifest.path,
            compose_command=compose_command or ("docker", "compose"),
            release_dir=release_dir,
            command_timeout=command_timeout,
            build_timeout=build_timeout,
        )
    return ContainerRuntime(
        session,
        config,
        manifest.path,
        release_dir=release_dir,
        command_timeout=command_timeout,
        build_timeout=build_timeout,
    )
