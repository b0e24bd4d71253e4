"""Field validators for deployment parameters.

Each validator returns an error string (or ``None`` when the value is fine)
so that callers can collect every problem before reporting.
"""

from __future__ import annotations

import ipaddress
import os
import re
from pathlib import Path
from typing import Optional

import paramiko

GIT_HTTPS_PATTERN = re.compile(r"^https://[^\s/]+/\S+\.git$")
GIT_SSH_PATTERN = re.compile(r"^git@[^\s:]+:\S+\.git$")
HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
APP_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]{0,62}$")
SERVICE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]+$")
BRANCH_FORBIDDEN = re.compile(r"[\s~^:?*\[\\]|\.\.|@\{|//")
MIN_TOKEN_LENGTH = 10
KEY_CLASSES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)


def validate_git_url(url: str) -> Optional[str]:
    if not url:
        return "repository URL is required"
    if GIT_HTTPS_PATTERN.match(url) or GIT_SSH_PATTERN.match(url):
        return None
    return (
        f"repository URL '{url}' must be HTTPS (https://...git) or SSH (git@...git) format"
    )


def validate_token(token: Optional[str]) -> Optional[str]:
    if token is None:
        return None
    if len(token) < MIN_TOKEN_LENGTH or any(ch.isspace() for ch in token):
        return "access token appears to be invalid (too short or contains whitespace)"
    return None


def validate_host(host: str) -> Optional[str]:
    if not host:
        return "remote host is required"
    if re.fullmatch(r"[0-9.]+", host):
        try:
            ipaddress.IPv4Address(host)
        except ValueError:
            return f"'{host}' is not a valid IPv4 address"
        return None
    if len(host) > 253:
        return f"hostname '{host}' is too long"
    labels = host.rstrip(".").split(".")
    if not all(HOSTNAME_LABEL.match(label) for label in labels):
        return f"'{host}' is not a valid IPv4 address or hostname"
    return None


def validate_user(user: str) -> Optional[str]:
    if not user:
        return "SSH user cannot be empty"
    if not re.fullmatch(r"[a-z_][a-z0-9_.-]*\$?", user, flags=re.IGNORECASE):
        return f"'{user}' is not a valid SSH user name"
    return None


def validate_port(port: object, name: str = "port") -> Optional[str]:
    try:
        value = int(port)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return f"{name} must be a number between 1 and 65535"
    if isinstance(port, bool) or not 1 <= value <= 65535:
        return f"{name} must be between 1 and 65535"
    return None


def validate_ssh_key(path: Optional[str]) -> Optional[str]:
    """Check the identity file exists, is readable and parses as a private key."""
    if not path:
        return None
    key_path = Path(path).expanduser()
    if not key_path.is_file():
        return f"SSH key file not found: {key_path}"
    if not os.access(key_path, os.R_OK):
        return f"SSH key file is not readable: {key_path}"
    for key_class in KEY_CLASSES:
        try:
            key_class.from_private_key_file(str(key_path))
        except paramiko.PasswordRequiredException:
            # 加密私钥：连接时再提供口令
            return None
        except (paramiko.SSHException, ValueError, OSError):
            continue
        return None
    return f"file does not appear to be a valid SSH private key: {key_path}"


def validate_branch(branch: str) -> Optional[str]:
    if not branch:
        return "branch name cannot be empty"
    if (
        branch.startswith("-")
        or branch.startswith("/")
        or branch.endswith("/")
        or branch.endswith(".")
        or branch.endswith(".lock")
        or BRANCH_FORBIDDEN.search(branch)
    ):
        return f"'{branch}' is not a valid branch name"
    return None


def validate_app_name(name: str) -> Optional[str]:
    if not name or not APP_NAME_PATTERN.match(name):
        return (
            f"application name '{name}' must be lowercase letters, digits, '.', '_' or '-' "
            "and start with a letter or digit"
        )
    return None


def validate_remote_dir(path: str) -> Optional[str]:
    if not path or not path.startswith("/"):
        return f"remote directory '{path}' must be an absolute path"
    if path.rstrip("/") == "":
        return "remote directory cannot be the filesystem root"
    if any(ch.isspace() for ch in path) or ".." in path.split("/"):
        return f"remote directory '{path}' must not contain whitespace or '..'"
    return None


def validate_service_name(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    if not SERVICE_NAME_PATTERN.match(name):
        return f"'{name}' is not a valid systemd service name"
    return None


def validate_local_file(path: Optional[str], label: str) -> Optional[str]:
    if path is None:
        return None
    if not Path(path).expanduser().is_file():
        return f"{label} not found: {path}"
    return None


def default_app_name(repo_url: str) -> str:
    """Derive a container-safe application name from the repository URL."""
    slug = repo_url.rstrip("/").split("/")[-1].split(":")[-1]
    if slug.endswith(".git"):
        slug = slug[:-4]
    slug = re.sub(r"[^a-z0-9_.-]+", "-", slug.lower()).strip("-._")
    return slug or "app"
