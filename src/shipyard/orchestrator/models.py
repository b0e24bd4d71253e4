"""Data models for the orchestrator module."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..analyzer import BuildManifest
from ..errors import ValidationError
from ..gitops import redact_url
from ..ssh.commands import join_remote
from ..ssh.credentials import RemoteTarget
from ..ssh.probe import RemoteHostFacts
from ..ssh.session import SSHCommandResult
from .. import validation


class DeployState(Enum):
    """部署状态机的状态"""
    PENDING = "pending"
    VALIDATED = "validated"
    STAGED = "staged"
    VERIFIED = "verified"
    CONNECTED = "connected"
    PROVISIONED = "provisioned"
    TRANSFERRED = "transferred"
    BUILT = "built"
    RUNNING = "running"
    HEALTH_CHECKED = "health_checked"
    PROXY_CONFIGURED = "proxy_configured"
    DONE = "done"
    # 终态
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"


class StepStatus(Enum):
    """步骤执行状态"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class CommandRecord:
    """命令执行记录"""
    command: str
    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float = 0.0
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def from_result(cls, result: SSHCommandResult) -> "CommandRecord":
        return cls(
            command=result.command,
            success=result.ok,
            exit_code=result.exit_status,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_seconds=round(result.duration_seconds, 3),
        )

    def to_dict(self, stdout_limit: int = 1000, stderr_limit: int = 500) -> Dict[str, Any]:
        return {
            "command": self.command,
            "success": self.success,
            "exit_code": self.exit_code,
            "stdout": self.stdout[-stdout_limit:] if self.stdout else self.stdout,
            "stderr": self.stderr[-stderr_limit:] if self.stderr else self.stderr,
            "duration_seconds": self.duration_seconds,
            "timestamp": self.timestamp,
        }


@dataclass
class StepResult:
    """步骤执行结果"""
    success: bool
    status: StepStatus
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1
    exit_code: Optional[int] = None

    @classmethod
    def succeeded(
        cls, outputs: Optional[Dict[str, Any]] = None, warnings: Optional[List[str]] = None
    ) -> "StepResult":
        """创建成功结果"""
        return cls(
            success=True,
            status=StepStatus.SUCCESS,
            outputs=outputs or {},
            warnings=list(warnings or []),
        )

    @classmethod
    def failed(
        cls,
        error: str,
        warnings: Optional[List[str]] = None,
        exit_code: Optional[int] = None,
    ) -> "StepResult":
        """创建失败结果"""
        return cls(
            success=False,
            status=StepStatus.FAILED,
            error=error,
            warnings=list(warnings or []),
            exit_code=exit_code,
        )

    @classmethod
    def skipped(cls, reason: str) -> "StepResult":
        """创建跳过结果"""
        return cls(success=True, status=StepStatus.SKIPPED, error=reason)


@dataclass(frozen=True)
class DeploymentConfig:
    """Validated, immutable input of one run."""

    repo_url: str
    host: str
    ssh_user: str
    app_port: int
    app_name: str
    credential: Optional[str] = field(default=None, repr=False)
    branch: str = "main"
    ssh_key_path: Optional[str] = None
    ssh_port: int = 22
    app_dir: str = "/opt/app"
    compose_file: Optional[str] = None
    env_file: Optional[str] = None
    force_install: bool = False
    systemd_service: Optional[str] = None
    proxy_enabled: bool = True
    server_name: Optional[str] = None

    @property
    def state_dir(self) -> str:
        """On-host directory for the snapshot record and backups."""
        return join_remote(self.app_dir, ".shipyard")

    @property
    def releases_dir(self) -> str:
        return join_remote(self.app_dir, "releases")

    @property
    def current_link(self) -> str:
        """Symlink to the release that is live."""
        return join_remote(self.app_dir, "current")

    def release_dir(self, release_id: str) -> str:
        return join_remote(self.releases_dir, release_id)

    def problems(self, *, rollback: bool = False) -> List[str]:
        """Every validation problem of this config, in field order."""
        checks = []
        if not rollback or self.repo_url:
            checks.append(validation.validate_git_url(self.repo_url))
        checks.extend(
            [
                validation.validate_token(self.credential),
                validation.validate_branch(self.branch),
                validation.validate_host(self.host),
                validation.validate_user(self.ssh_user),
                validation.validate_ssh_key(self.ssh_key_path),
                validation.validate_port(self.ssh_port, "SSH port"),
                None if rollback else validation.validate_port(self.app_port, "application port"),
                validation.validate_app_name(self.app_name),
                validation.validate_remote_dir(self.app_dir),
                validation.validate_service_name(self.systemd_service),
                validation.validate_local_file(self.env_file, "environment file"),
            ]
        )
        return [problem for problem in checks if problem]

    def validate(self, *, rollback: bool = False) -> None:
        problems = self.problems(rollback=rollback)
        if problems:
            raise ValidationError(problems)

    def target(self, timeout: int = 20) -> RemoteTarget:
        return RemoteTarget(
            host=self.host,
            username=self.ssh_user,
            port=self.ssh_port,
            key_path=self.ssh_key_path,
            timeout=timeout,
        )

    def to_payload(self) -> Dict[str, Any]:
        """Log-safe view: the credential never leaves this object."""
        return {
            "repo_url": redact_url(self.repo_url),
            "branch": self.branch,
            "host": self.host,
            "ssh_user": self.ssh_user,
            "ssh_port": self.ssh_port,
            "ssh_key_path": self.ssh_key_path,
            "app_name": self.app_name,
            "app_port": self.app_port,
            "app_dir": self.app_dir,
            "compose_file": self.compose_file,
            "env_file": self.env_file,
            "force_install": self.force_install,
            "systemd_service": self.systemd_service,
            "proxy_enabled": self.proxy_enabled,
            "server_name": self.server_name,
            "token_provided": bool(self.credential),
        }


class RuntimeKind(str, Enum):
    CONTAINER = "container"
    COMPOSE = "compose"


@dataclass(frozen=True)
class Snapshot:
    """What was running before a destructive step, so it can be put back."""

    app_name: str
    runtime: RuntimeKind
    created_at: str
    compose_file: Optional[str] = None
    previous_image_ref: Optional[str] = None
    previous_container_id: Optional[str] = None
    proxy_config_path: Optional[str] = None
    # proxy_config_path 的备份；None 表示之前没有配置
    previous_proxy_config_path: Optional[str] = None
    # 上一个 release 目录及其 .env（compose 回滚时要用旧的 compose 文件）
    previous_release_dir: Optional[str] = None
    previous_env_file: Optional[str] = None
    # 被 ProxyConfigure 删掉的默认站点和它的备份
    default_site_path: Optional[str] = None
    previous_default_site_path: Optional[str] = None

    @property
    def has_previous_runtime(self) -> bool:
        return bool(self.previous_container_id or self.previous_image_ref)

    def to_record(self) -> Dict[str, str]:
        return {
            "APP_NAME": self.app_name,
            "RUNTIME": self.runtime.value,
            "COMPOSE_FILE": self.compose_file or "",
            "PREVIOUS_IMAGE_REF": self.previous_image_ref or "",
            "PREVIOUS_CONTAINER_ID": self.previous_container_id or "",
            "PROXY_CONFIG_PATH": self.proxy_config_path or "",
            "PREVIOUS_PROXY_CONFIG_PATH": self.previous_proxy_config_path or "",
            "PREVIOUS_RELEASE_DIR": self.previous_release_dir or "",
            "PREVIOUS_ENV_FILE": self.previous_env_file or "",
            "DEFAULT_SITE_PATH": self.default_site_path or "",
            "PREVIOUS_DEFAULT_SITE_PATH": self.previous_default_site_path or "",
            "CREATED_AT": self.created_at,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Optional[str]]) -> "Snapshot":
        def value(key: str) -> Optional[str]:
            return record.get(key) or None

        return cls(
            app_name=record.get("APP_NAME") or "",
            runtime=RuntimeKind(record.get("RUNTIME") or RuntimeKind.CONTAINER.value),
            created_at=record.get("CREATED_AT") or "",
            compose_file=value("COMPOSE_FILE"),
            previous_image_ref=value("PREVIOUS_IMAGE_REF"),
            previous_container_id=value("PREVIOUS_CONTAINER_ID"),
            proxy_config_path=value("PROXY_CONFIG_PATH"),
            previous_proxy_config_path=value("PREVIOUS_PROXY_CONFIG_PATH"),
            previous_release_dir=value("PREVIOUS_RELEASE_DIR"),
            previous_env_file=value("PREVIOUS_ENV_FILE"),
            default_site_path=value("DEFAULT_SITE_PATH"),
            previous_default_site_path=value("PREVIOUS_DEFAULT_SITE_PATH"),
        )


@dataclass(frozen=True)
class RunState:
    """Everything the steps learned so far. Replaced, never mutated."""

    phase: DeployState = DeployState.PENDING
    source_dir: Optional[Path] = None
    commit_sha: Optional[str] = None
    manifest: Optional[BuildManifest] = None
    host_facts: Optional[RemoteHostFacts] = None
    capabilities: Tuple[Tuple[str, str], ...] = ()
    compose_command: Tuple[str, ...] = ()
    proxy_available: bool = False
    release_dir: Optional[str] = None
    snapshot: Optional[Snapshot] = None
    warnings: Tuple[str, ...] = ()

    def advance(self, phase: DeployState, **changes: Any) -> "RunState":
        return replace(self, phase=phase, **changes)

    def update(self, **changes: Any) -> "RunState":
        return replace(self, **changes)

    def with_capability(self, name: str, status: str) -> "RunState":
        others = tuple(item for item in self.capabilities if item[0] != name)
        return replace(self, capabilities=others + ((name, status),))

    def with_warnings(self, *warnings: str) -> "RunState":
        return replace(self, warnings=self.warnings + tuple(warnings))


class DeployStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class DeployResult:
    """Outcome of one run as reported to the CLI."""

    status: DeployStatus
    final_state: DeployState
    failed_step: Optional[str] = None
    error: Optional[str] = None
    log_path: Optional[Path] = None
    warnings: List[str] = field(default_factory=list)
    rolled_back: bool = False
    rollback_error: Optional[str] = None
    commit_sha: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is DeployStatus.SUCCESS

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1
