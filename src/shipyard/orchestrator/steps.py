"""The deploy plan: one class per step of the state machine.

Each step reads the immutable ``RunState`` and returns a new one together
with its ``StepResult``. Steps are idempotent: running one again against a
host that already reached its state changes nothing.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import requests

from ..analyzer import BuildManifest, ManifestKind, ManifestScanner
from ..config import AppConfig, DeploymentSettings, ProxySettings
from ..errors import (
    CapabilityMissingError,
    DeployError,
    HealthCheckFailedError,
    SnapshotNotFoundError,
)
from ..gitops import GitRepositoryManager, redact_url
from ..provision import Capability, CapabilityProbe, CapabilityStatus, Provisioner
from ..proxy import NginxConfigurator
from ..ssh import FileTransfer, RemoteProbe, SSHCommandResult, SSHSession, has_binary
from ..ssh.commands import RemoteCommand, cmd, join_remote
from ..ssh.credentials import RemoteTarget
from ..workspace import WorkspaceManager
from .models import DeployState, DeploymentConfig, RunState, Snapshot, StepResult
from .runtime import ApplicationRuntime, runtime_for
from .snapshot import SnapshotStore

logger = logging.getLogger(__name__)

SessionFactory = Callable[[RemoteTarget, Callable[[SSHCommandResult], None]], SSHSession]

CURL_CONNECTION_REFUSED = 7
CURL_TIMED_OUT = 28
DRY_RUN_RELEASE = "<release>"


def default_session_factory(
    target: RemoteTarget, listener: Callable[[SSHCommandResult], None]
) -> SSHSession:
    return SSHSession(target, command_listener=listener)


@dataclass
class DeployEnvironment:
    """Collaborators shared by all steps of one run."""

    config: DeploymentConfig
    settings: AppConfig
    workspace: WorkspaceManager
    git: GitRepositoryManager = field(default_factory=GitRepositoryManager)
    scanner: ManifestScanner = field(default_factory=ManifestScanner)
    session_factory: SessionFactory = default_session_factory
    http: requests.Session = field(default_factory=requests.Session)
    sleep: Callable[[float], None] = time.sleep
    command_listener: Callable[[SSHCommandResult], None] = lambda result: None
    session: Optional[SSHSession] = None
    _provisioner: Optional[Provisioner] = field(default=None, init=False, repr=False)

    @property
    def timeouts(self) -> DeploymentSettings:
        return self.settings.deployment

    def open_session(self) -> SSHSession:
        if self.session is None:
            target = self.config.target(timeout=self.timeouts.connect_timeout)
            self.session = self.session_factory(target, self.command_listener)
        return self.session

    def require_session(self) -> SSHSession:
        if self.session is None:
            raise DeployError("Not connected to the remote host", hint="Run the Connect step first.")
        return self.session

    def drop_connection(self) -> None:
        """Forget a broken transport; the next command reconnects."""
        if self.session is not None:
            self.session.close()

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None

    @property
    def provisioner(self) -> Provisioner:
        if self._provisioner is None:
            self._provisioner = Provisioner(
                CapabilityProbe(),
                install_timeout=self.timeouts.install_timeout,
                command_timeout=self.timeouts.command_timeout,
                sleep=self.sleep,
            )
        return self._provisioner

    def runtime(self, state: RunState) -> ApplicationRuntime:
        if state.manifest is None:
            raise DeployError("No build manifest selected", hint="The BuildFiles step must run first.")
        return runtime_for(
            self.require_session(),
            self.config,
            state.manifest,
            compose_command=state.compose_command,
            release_dir=state.release_dir,
            command_timeout=self.timeouts.command_timeout,
            build_timeout=self.timeouts.build_timeout,
        )

    def runtime_for_snapshot(self, snapshot: Snapshot, state: RunState) -> ApplicationRuntime:
        manifest = state.manifest
        if snapshot.compose_file:
            manifest = BuildManifest(ManifestKind.COMPOSE, snapshot.compose_file, Path("."))
        elif manifest is None or manifest.is_compose:
            manifest = BuildManifest(ManifestKind.DOCKERFILE, "Dockerfile", Path("."))
        return runtime_for(
            self.require_session(),
            self.config,
            manifest,
            compose_command=state.compose_command,
            release_dir=state.release_dir,
            command_timeout=self.timeouts.command_timeout,
            build_timeout=self.timeouts.build_timeout,
        )

    def proxy(self) -> NginxConfigurator:
        return NginxConfigurator(
            self.require_session(),
            self._proxy_settings(),
            command_timeout=self.timeouts.command_timeout,
        )

    def snapshots(self) -> SnapshotStore:
        return SnapshotStore(
            self.require_session(), self.config, command_timeout=self.timeouts.command_timeout
        )

    def _proxy_settings(self) -> ProxySettings:
        settings = self.settings.proxy
        if self.config.server_name:
            settings = replace(settings, server_name=self.config.server_name)
        return settings

    def render(self, command: RemoteCommand) -> str:
        return command.render(as_root=self.config.ssh_user == "root")


class DeployStep:
    """Base class: a named, idempotent unit of work."""

    name: str = ""
    reached: DeployState = DeployState.PENDING
    destructive: bool = False
    retryable: bool = False

    def applies(self, env: DeployEnvironment, state: RunState) -> Optional[str]:
        """Return a skip reason, or None when the step should run."""
        return None

    def run(self, env: DeployEnvironment, state: RunState) -> Tuple[RunState, StepResult]:
        raise NotImplementedError

    def snapshot(self, env: DeployEnvironment, state: RunState) -> Snapshot:
        raise NotImplementedError

    def describe(self, env: DeployEnvironment) -> List[str]:
        return []


class ValidateStep(DeployStep):
    name = "Validate"
    reached = DeployState.VALIDATED

    def __init__(self, rollback: bool = False) -> None:
        self.rollback = rollback

    def run(self, env, state):
        env.config.validate(rollback=self.rollback)
        return state, StepResult.succeeded()

    def describe(self, env):
        return ["validate repository URL, token, branch, host, user, SSH key and ports"]


class StageStep(DeployStep):
    name = "Stage"
    reached = DeployState.STAGED

    def run(self, env, state):
        config = env.config
        context = env.workspace.prepare(config.repo_url)
        staged = env.git.stage(config.repo_url, config.credential, config.branch, context.source_dir)
        env.workspace.update_metadata(
            context,
            branch=staged.branch,
            last_commit=staged.commit_sha,
            last_staged_at=int(time.time()),
        )
        warnings = []
        if staged.stashed:
            warnings.append("Local changes in the staging area were stashed")
        return (
            state.update(source_dir=staged.path, commit_sha=staged.commit_sha),
            StepResult.succeeded(
                outputs={
                    "path": str(staged.path),
                    "commit": staged.commit_sha,
                    "summary": staged.summary,
                    "created_branch": staged.created_branch,
                },
                warnings=warnings,
            ),
        )

    def describe(self, env):
        return [
            f"git clone or fetch {redact_url(env.config.repo_url)} into the local workspace",
            f"check out branch {env.config.branch} (local, else remote tracking branch)",
        ]


class BuildFilesStep(DeployStep):
    """Fail fast, before any remote call, when there is nothing to build."""

    name = "BuildFiles"
    reached = DeployState.VERIFIED

    def run(self, env, state):
        manifest = env.scanner.scan(state.source_dir, env.config.compose_file)
        return state.update(manifest=manifest), StepResult.succeeded(outputs=manifest.to_payload())

    def describe(self, env):
        if env.config.compose_file:
            return [f"require compose file {env.config.compose_file}"]
        return ["look for: " + ", ".join(env.scanner.expected_files())]


class ConnectStep(DeployStep):
    name = "Connect"
    reached = DeployState.CONNECTED
    retryable = True

    def run(self, env, state):
        session = env.open_session()
        session.connect()
        facts = RemoteProbe(step=self.name).collect(session)
        if not session.as_root:
            sudo = session.execute(cmd("true", sudo=True), step=self.name)
            if not sudo.ok:
                raise DeployError(
                    f"User '{env.config.ssh_user}' cannot run sudo without a password",
                    step=self.name,
                    exit_code=sudo.exit_status,
                    hint="Configure passwordless sudo for this user or connect as root.",
                )
        logger.info("Connected to %s (%s, %s)", facts.hostname, facts.os_release, facts.architecture)
        return state.update(host_facts=facts), StepResult.succeeded(outputs=facts.to_payload())

    def describe(self, env):
        target = env.config.target()
        return [f"ssh {target.address}", "collect host facts (hostname, kernel, os-release, package manager)"]


class ProvisionStep(DeployStep):
    name = "Provision"
    reached = DeployState.PROVISIONED
    retryable = True

    def run(self, env, state):
        session = env.require_session()
        facts = state.host_facts
        provisioner = env.provisioner
        warnings: List[str] = []

        docker = provisioner.ensure(session, Capability.DOCKER, facts, force=env.config.force_install)
        state = state.with_capability(Capability.DOCKER.value, docker.value)
        if docker is not CapabilityStatus.PRESENT:
            raise CapabilityMissingError(Capability.DOCKER.value, docker.value, step=self.name)

        compose_command: Tuple[str, ...] = ()
        if state.manifest is not None and state.manifest.is_compose:
            compose = provisioner.ensure(session, Capability.COMPOSE, facts)
            state = state.with_capability(Capability.COMPOSE.value, compose.value)
            compose_command = provisioner.probe.compose_command(session) or ()
            if compose is not CapabilityStatus.PRESENT or not compose_command:
                raise CapabilityMissingError(Capability.COMPOSE.value, compose.value, step=self.name)

        proxy_available = False
        if env.config.proxy_enabled:
            nginx = provisioner.ensure(session, Capability.NGINX, facts)
            state = state.with_capability(Capability.NGINX.value, nginx.value)
            proxy_available = nginx is CapabilityStatus.PRESENT
            if not proxy_available:
                message = (
                    f"nginx is {nginx.value}; the application will be published directly "
                    f"on port {env.config.app_port}"
                )
                logger.warning(message)
                warnings.append(message)

        state = state.update(compose_command=compose_command, proxy_available=proxy_available)
        return state, StepResult.succeeded(outputs=dict(state.capabilities), warnings=warnings)

    def describe(self, env):
        lines = [
            "ensure docker: probe binary + service, install via apt-get/dnf/yum/apk if absent, "
            "start service if broken" + (" (forced reinstall)" if env.config.force_install else ""),
            "ensure compose (compose manifests only)",
        ]
        if env.config.proxy_enabled:
            lines.append("ensure nginx (optional: degrades to a warning)")
        return lines


class TransferStep(DeployStep):
    name = "Transfer"
    reached = DeployState.TRANSFERRED
    retryable = True

    def run(self, env, state):
        config = env.config
        release_dir = config.release_dir(release_id(state.commit_sha))
        transfer = FileTransfer(env.require_session(), timeout=env.timeouts.command_timeout, step=self.name)
        remote_src = transfer.push_directory(state.source_dir, release_dir, config.app_name)
        outputs = {"release_dir": release_dir, "remote_src": remote_src}
        if config.env_file:
            env_path = join_remote(release_dir, ".env")
            transfer.push_file(Path(config.env_file), env_path, config.app_name)
            outputs["env_file"] = env_path
        return state.update(release_dir=release_dir), StepResult.succeeded(outputs=outputs)

    def describe(self, env):
        config = env.config
        release_dir = config.release_dir(DRY_RUN_RELEASE)
        src = join_remote(release_dir, "src")
        lines = [
            "pack staged repository into a tar.gz (without .git) and upload it over SFTP (mode 600)",
            env.render(cmd("mkdir", "-p", src, sudo=True)),
            env.render(cmd("tar", "-xzf", "<archive>", "-C", src, sudo=True)),
        ]
        if config.env_file:
            lines.append(f"upload {config.env_file} to {join_remote(release_dir, '.env')} (mode 600)")
        return lines


class BuildStep(DeployStep):
    name = "Build"
    reached = DeployState.BUILT
    retryable = True

    def run(self, env, state):
        runtime = env.runtime(state)
        runtime.build(step=self.name)
        return state, StepResult.succeeded(outputs={"runtime": runtime.kind.value})

    def describe(self, env):
        return [env.render(command) for command in _dry_runtime(env).build_commands()]


class RunStep(DeployStep):
    """Replace the running application. Destructive: a snapshot is taken first."""

    name = "Run"
    reached = DeployState.RUNNING
    destructive = True

    def snapshot(self, env, state):
        return env.snapshots().snapshot_runtime(env.runtime(state), base=state.snapshot, step=self.name)

    def run(self, env, state):
        runtime = env.runtime(state)
        runtime.run(local_only=state.proxy_available, step=self.name)
        env.snapshots().activate(state.release_dir, step=self.name)
        return state, StepResult.succeeded(outputs={"release_dir": state.release_dir})

    def describe(self, env):
        runtime = _dry_runtime(env)
        lines = [f"snapshot current deployment to {join_remote(env.config.state_dir, 'snapshot.env')}"]
        lines += [env.render(command) for command in runtime.run_commands(env.config.proxy_enabled)]
        lines.append(env.render(cmd("ln", "-sfn", runtime.release_dir, env.config.current_link, sudo=True)))
        return lines


class HealthCheckStep(DeployStep):
    name = "HealthCheck"
    reached = DeployState.HEALTH_CHECKED

    def run(self, env, state):
        settings = env.settings.health
        session = env.require_session()
        runtime = env.runtime(state)
        url = f"http://127.0.0.1:{env.config.app_port}{settings.path}"
        curl_available = has_binary(session, "curl", step=self.name)

        last_problem = ""
        failing_status = None
        for attempt in range(1, settings.attempts + 1):
            if not runtime.is_running(step=self.name):
                raise HealthCheckFailedError(
                    f"Application '{env.config.app_name}' is not running",
                    step=self.name,
                    hint=f"Inspect the container logs: docker logs {env.config.app_name}",
                )
            if not curl_available:
                message = "curl is not available on the host; only the running state was checked"
                logger.warning(message)
                return state, StepResult.succeeded(warnings=[message])

            status, last_problem = self._probe(session, url, settings.request_timeout)
            if status is not None and 200 <= status < 400:
                logger.info("Health check passed: %s -> %s", url, status)
                return state, StepResult.succeeded(outputs={"status": status, "attempts": attempt})
            if status == 404:
                message = f"No health endpoint at {settings.path} (HTTP 404); application is running"
                logger.warning(message)
                return state, StepResult.succeeded(outputs={"status": status}, warnings=[message])
            failing_status = status if status is not None and status >= 500 else None
            logger.info("Health check attempt %s/%s: %s", attempt, settings.attempts, last_problem)
            if attempt < settings.attempts:
                env.sleep(settings.backoff_seconds)

        if failing_status is not None:
            raise HealthCheckFailedError(
                f"Application reports itself unhealthy: {last_problem}",
                step=self.name,
                hint=f"Inspect the container logs: docker logs {env.config.app_name}",
            )
        message = f"Health endpoint {url} did not answer ({last_problem}); application is running"
        logger.warning(message)
        return state, StepResult.succeeded(warnings=[message])

    def _probe(self, session: SSHSession, url: str, timeout: int) -> Tuple[Optional[int], str]:
        result = session.execute(
            cmd("curl", "-sS", "-o", "/dev/null", "-w", "%{http_code}", "--max-time", timeout, url),
            timeout=timeout + 10,
            step=self.name,
        )
        if result.exit_status == CURL_CONNECTION_REFUSED:
            return None, "connection refused"
        if result.exit_status == CURL_TIMED_OUT:
            return None, "timed out"
        code = result.stdout.strip()
        if result.ok and code.isdigit() and code != "000":
            return int(code), f"HTTP {code}"
        return None, result.stderr or f"curl exited with {result.exit_status}"

    def describe(self, env):
        settings = env.settings.health
        return [
            f"up to {settings.attempts} attempts, {settings.backoff_seconds:g}s apart: container running? "
            f"then GET http://127.0.0.1:{env.config.app_port}{settings.path} on the host"
        ]


class ServiceStep(DeployStep):
    name = "Service"
    reached = DeployState.HEALTH_CHECKED

    def applies(self, env, state):
        if not env.config.systemd_service:
            return "no --systemd-service requested"
        return None

    def run(self, env, state):
        runtime = env.runtime(state)
        start, stop = runtime.service_commands()
        name = env.config.systemd_service
        installed = env.provisioner.install_service_unit(
            env.require_session(),
            name,
            description=f"{env.config.app_name} (managed by shipyard)",
            working_dir=env.config.app_dir,
            start=start,
            stop=stop,
            facts=state.host_facts,
        )
        if not installed:
            return state, StepResult.succeeded(
                warnings=[f"Host has no systemd; service {name} was not installed"]
            )
        return state, StepResult.succeeded(outputs={"unit": f"{name}.service"})

    def describe(self, env):
        if not env.config.systemd_service:
            return []
        name = env.config.systemd_service
        return [
            f"write /etc/systemd/system/{name}.service",
            env.render(cmd("systemctl", "daemon-reload", sudo=True)),
            env.render(cmd("systemctl", "enable", f"{name}.service", sudo=True)),
        ]


class ProxyConfigureStep(DeployStep):
    name = "ProxyConfigure"
    reached = DeployState.PROXY_CONFIGURED
    destructive = True

    def applies(self, env, state):
        if not env.config.proxy_enabled:
            return "reverse proxy disabled"
        if not state.proxy_available:
            return "nginx is not available on the host"
        return None

    def snapshot(self, env, state):
        store = env.snapshots()
        base = state.snapshot
        if base is None:
            base = store.snapshot_runtime(env.runtime(state), step=self.name)
        return store.snapshot_proxy(base, env.proxy(), step=self.name)

    def run(self, env, state):
        applied = env.proxy().apply(env.config.app_name, env.config.app_port, state.host_facts)
        return state, StepResult.succeeded(
            outputs={"config_path": applied.config_path}, warnings=applied.warnings
        )

    def describe(self, env):
        if not env.config.proxy_enabled:
            return []
        return [
            f"back up and write nginx site for {env.config.app_name} "
            f"(:{env.settings.proxy.listen_port} -> 127.0.0.1:{env.config.app_port})",
            env.render(cmd("nginx", "-t", sudo=True)),
            "reload nginx",
        ]


class VerifyStep(DeployStep):
    name = "Verify"
    reached = DeployState.DONE

    def run(self, env, state):
        runtime = env.runtime(state)
        if not runtime.is_running(step=self.name):
            raise HealthCheckFailedError(
                f"Application '{env.config.app_name}' stopped running", step=self.name
            )
        if not state.proxy_available:
            return state, StepResult.succeeded(outputs={"external_check": "skipped"})

        url = f"http://{env.config.host}:{env.settings.proxy.listen_port}/"
        try:
            response = env.http.get(
                url, timeout=env.settings.health.request_timeout, allow_redirects=False
            )
        except requests.RequestException as exc:
            message = f"External check of {url} failed ({exc}); a firewall may block the port"
            logger.warning(message)
            return state, StepResult.succeeded(warnings=[message])
        if response.status_code >= 500:
            raise HealthCheckFailedError(
                f"Reverse proxy answered HTTP {response.status_code} for {url}",
                step=self.name,
                hint="Check 'nginx -t' and that the application listens on the configured port.",
            )
        logger.info("External check passed: %s -> %s", url, response.status_code)
        return state, StepResult.succeeded(outputs={"external_status": response.status_code})

    def describe(self, env):
        lines = ["check the application is still running"]
        if env.config.proxy_enabled:
            lines.append(f"GET http://{env.config.host}:{env.settings.proxy.listen_port}/ from here")
        return lines


class RollbackStep(DeployStep):
    """Explicit ``--rollback``: restore from the on-host snapshot record."""

    name = "Rollback"
    reached = DeployState.ROLLED_BACK

    def run(self, env, state):
        session = env.require_session()
        store = env.snapshots()
        snapshot = store.load(step=self.name)
        if snapshot is None:
            raise SnapshotNotFoundError(
                f"No snapshot record at {store.record_path}",
                step=self.name,
                hint="Snapshots exist only while a deployment is in progress or failed.",
            )
        if snapshot.compose_file:
            state = state.update(compose_command=CapabilityProbe(step=self.name).compose_command(session) or ())
        runtime = env.runtime_for_snapshot(snapshot, state)
        proxy = env.proxy() if snapshot.proxy_config_path else None
        store.rollback(snapshot, runtime, proxy, state.host_facts, step=self.name)
        return state.update(snapshot=snapshot), StepResult.succeeded(
            outputs={"snapshot_created_at": snapshot.created_at}
        )

    def describe(self, env):
        return [
            f"read {join_remote(env.config.state_dir, 'snapshot.env')}",
            "restore previous container/images, proxy config and default site, re-link the previous release, then re-verify",
        ]


def build_plan() -> List[DeployStep]:
    return [
        ValidateStep(),
        StageStep(),
        BuildFilesStep(),
        ConnectStep(),
        ProvisionStep(),
        TransferStep(),
        BuildStep(),
        RunStep(),
        HealthCheckStep(),
        ServiceStep(),
        ProxyConfigureStep(),
        VerifyStep(),
    ]


def build_rollback_plan() -> List[DeployStep]:
    return [ValidateStep(rollback=True), ConnectStep(), RollbackStep()]


def release_id(commit_sha: Optional[str]) -> str:
    """Name of a new release directory: UTC timestamp, short commit and a random tag."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{stamp}-{(commit_sha or 'local')[:12]}-{secrets.token_hex(3)}"


def _dry_runtime(env: DeployEnvironment) -> ApplicationRuntime:
    """Runtime used only to render commands; it never executes anything."""
    if env.config.compose_file:
        manifest = BuildManifest(ManifestKind.COMPOSE, env.config.compose_file, Path("."))
    else:
        manifest = BuildManifest(ManifestKind.DOCKERFILE, "Dockerfile", Path("."))
    release_dir = env.config.release_dir(DRY_RUN_RELEASE)
    return runtime_for(None, env.config, manifest, release_dir=release_dir)  # type: ignore[arg-type]
