"""High-level workflow: deployment request -> validated config -> orchestrator run."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import requests

from .analyzer import ManifestScanner
from .config import AppConfig
from .gitops import GitRepositoryManager
from .locks import TargetLock
from .orchestrator import DeployEnvironment, DeployResult, DeploymentConfig, DeploymentOrchestrator
from .orchestrator.steps import SessionFactory, default_session_factory
from .paths import LOCKS_DIR
from .ssh.credentials import parse_host_spec
from .utils.logging import get_logger
from .validation import default_app_name
from .workspace import WorkspaceManager

logger = get_logger(__name__)


@dataclass
class DeploymentRequest:
    """User-provided deployment request captured from the CLI."""

    repo_url: Optional[str] = None
    host: Optional[str] = None                  # user@host 或 host
    ssh_user: Optional[str] = None
    ssh_key: Optional[str] = None
    ssh_port: Optional[int] = None
    token: Optional[str] = field(default=None, repr=False)
    branch: Optional[str] = None
    app_port: Optional[int] = None
    app_name: Optional[str] = None
    app_dir: Optional[str] = None
    compose_file: Optional[str] = None
    env_file: Optional[str] = None
    install_docker: bool = False
    systemd_service: Optional[str] = None
    proxy_enabled: bool = True
    server_name: Optional[str] = None


class DeploymentWorkflow:
    """Coordinates one deployment (or rollback) against one target host."""

    def __init__(
        self,
        config: AppConfig,
        workspace: str,
        session_factory: SessionFactory = default_session_factory,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        git: Optional[GitRepositoryManager] = None,
        log_dir: Optional[str] = None,
        locks_dir: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.workspace = Path(workspace)
        self.session_factory = session_factory
        self.http = http
        self.sleep = sleep
        self.git = git or GitRepositoryManager()
        self.log_dir = log_dir or config.deployment.log_dir
        self.locks_dir = Path(locks_dir) if locks_dir else LOCKS_DIR

    def build_config(self, request: DeploymentRequest) -> DeploymentConfig:
        """Merge the request with configured defaults. Validation happens in the Validate step."""
        deployment = self.config.deployment
        host_spec = request.host or deployment.default_host or ""
        default_user = request.ssh_user or deployment.default_username
        if host_spec:
            user, host = parse_host_spec(host_spec, default_user)
        else:
            user, host = default_user or "", ""

        key_path = request.ssh_key
        if not key_path and deployment.default_key_path:
            candidate = Path(deployment.default_key_path).expanduser()
            # 默认私钥只在存在时使用
            if candidate.is_file():
                key_path = str(candidate)
        elif key_path:
            key_path = str(Path(key_path).expanduser())

        repo_url = request.repo_url or ""
        token = request.token if request.token is not None else deployment.default_git_token
        return DeploymentConfig(
            repo_url=repo_url,
            host=host,
            ssh_user=user,
            app_port=request.app_port if request.app_port is not None else 0,
            app_name=request.app_name or default_app_name(repo_url),
            credential=token or None,
            branch=request.branch or deployment.default_branch,
            ssh_key_path=key_path,
            ssh_port=request.ssh_port or deployment.default_port,
            app_dir=request.app_dir or deployment.app_dir,
            compose_file=request.compose_file,
            env_file=request.env_file,
            force_install=request.install_docker,
            systemd_service=request.systemd_service,
            proxy_enabled=request.proxy_enabled and self.config.proxy.enabled,
            server_name=request.server_name,
        )

    def plan(self, request: DeploymentRequest) -> List[str]:
        """Dry run: the planned steps and commands, nothing is executed."""
        orchestrator = self._orchestrator(self.build_config(request))
        return orchestrator.dry_run()

    def deploy(
        self, request: DeploymentRequest, cancel_event: Optional[threading.Event] = None
    ) -> DeployResult:
        config = self.build_config(request)
        logger.info("Preparing deployment of %s to %s", config.app_name, config.host or "?")
        with TargetLock(self.locks_dir, self._lock_key(config)):
            result = self._orchestrator(config, cancel_event).run()
        self._report(result)
        return result

    def rollback(self, request: DeploymentRequest) -> DeployResult:
        config = self.build_config(request)
        logger.info("Rolling back %s on %s", config.app_name, config.host or "?")
        with TargetLock(self.locks_dir, self._lock_key(config)):
            result = self._orchestrator(config).rollback()
        self._report(result)
        return result

    def _orchestrator(
        self, config: DeploymentConfig, cancel_event: Optional[threading.Event] = None
    ) -> DeploymentOrchestrator:
        env = DeployEnvironment(
            config=config,
            settings=self.config,
            workspace=WorkspaceManager(self.workspace),
            git=self.git,
            scanner=ManifestScanner(),
            session_factory=self.session_factory,
            http=self.http or requests.Session(),
            sleep=self.sleep,
        )
        return DeploymentOrchestrator(env, log_dir=self.log_dir, cancel_event=cancel_event)

    @staticmethod
    def _lock_key(config: DeploymentConfig) -> str:
        return config.target().lock_key() or "unknown-host"

    @staticmethod
    def _report(result: DeployResult) -> None:
        if result.succeeded:
            if result.commit_sha:
                logger.info("Deployed commit %s", result.commit_sha[:12])
        elif result.rolled_back:
            logger.error("Deployment failed at %s and was rolled back: %s", result.failed_step, result.error)
        elif result.rollback_error:
            logger.critical("Rollback failed: %s", result.rollback_error)
        if result.log_path:
            logger.info("Deployment log: %s", result.log_path)
