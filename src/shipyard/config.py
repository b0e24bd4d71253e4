"""Configuration loading utilities for shipyard."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .errors import ValidationError
from .paths import WORKSPACE_DIR

# Load .env file if it exists
load_dotenv()

_DEFAULT_CONFIG_PATH = Path("config/shipyard.json")


@dataclass
class DeploymentSettings:
    """Defaults for deployment parameters and remote timeouts."""

    workspace_root: str = str(WORKSPACE_DIR)
    log_dir: str = "deploy_logs"
    default_branch: str = "main"
    default_host: Optional[str] = None
    default_port: int = 22
    default_username: Optional[str] = None
    default_key_path: str = "~/.ssh/id_rsa"
    default_git_token: Optional[str] = None
    app_dir: str = "/opt/app"
    connect_timeout: int = 20
    command_timeout: int = 300     # 普通远程命令超时（秒）
    install_timeout: int = 900     # 软件包安装超时
    build_timeout: int = 1800      # 镜像构建超时


@dataclass
class RetrySettings:
    """Retry policy for idempotent steps hit by transient transport errors."""

    max_attempts: int = 3
    backoff_seconds: float = 5.0


@dataclass
class HealthCheckSettings:
    path: str = "/health"
    attempts: int = 5
    backoff_seconds: float = 3.0
    request_timeout: int = 5


@dataclass
class ProxySettings:
    enabled: bool = True
    server_name: str = "_"
    listen_port: int = 80


@dataclass
class AppConfig:
    """Top-level configuration."""

    deployment: DeploymentSettings = field(default_factory=DeploymentSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    health: HealthCheckSettings = field(default_factory=HealthCheckSettings)
    proxy: ProxySettings = field(default_factory=ProxySettings)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        def section(name: str) -> Dict[str, Any]:
            values = payload.get(name, {}) or {}
            # 过滤掉以下划线开头的注释字段
            return {k: v for k, v in values.items() if not k.startswith("_")}

        return cls(
            deployment=DeploymentSettings(
                **{**DeploymentSettings().__dict__, **section("deployment")}
            ),
            retry=RetrySettings(**{**RetrySettings().__dict__, **section("retry")}),
            health=HealthCheckSettings(
                **{**HealthCheckSettings().__dict__, **section("health")}
            ),
            proxy=ProxySettings(**{**ProxySettings().__dict__, **section("proxy")}),
        )


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path`, the default location, or built-in defaults.

    Environment variables (higher priority than config file):
    - SHIPYARD_SSH_HOST: Default SSH host
    - SHIPYARD_SSH_PORT: Default SSH port
    - SHIPYARD_SSH_USER: Default SSH username
    - SHIPYARD_SSH_KEY_PATH: Path to SSH private key
    - SHIPYARD_APP_DIR: Remote deployment directory
    - SHIPYARD_GIT_TOKEN: Access token for HTTPS repositories
    """
    if path and not Path(path).is_file():
        raise FileNotFoundError(f"Could not find configuration file: {path}")

    config = AppConfig()
    candidate = Path(path) if path else _DEFAULT_CONFIG_PATH
    if candidate.is_file():
        with candidate.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        config = AppConfig.from_dict(data)

    deployment = config.deployment

    env_host = os.getenv("SHIPYARD_SSH_HOST")
    if env_host:
        deployment.default_host = env_host

    env_port = os.getenv("SHIPYARD_SSH_PORT")
    if env_port:
        try:
            deployment.default_port = int(env_port)
        except ValueError:
            raise ValidationError(
                f"SHIPYARD_SSH_PORT must be a port number, got {env_port!r}",
                hint="Set SHIPYARD_SSH_PORT to a number such as 22, or unset it.",
            ) from None

    env_username = os.getenv("SHIPYARD_SSH_USER")
    if env_username:
        deployment.default_username = env_username

    env_key_path = os.getenv("SHIPYARD_SSH_KEY_PATH")
    if env_key_path:
        deployment.default_key_path = env_key_path

    env_app_dir = os.getenv("SHIPYARD_APP_DIR")
    if env_app_dir:
        deployment.app_dir = env_app_dir

    env_token = os.getenv("SHIPYARD_GIT_TOKEN")
    if env_token:
        deployment.default_git_token = env_token

    return config
