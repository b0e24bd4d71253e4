"""Git-based repository management."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from ..errors import BranchNotFoundError, DeployError

logger = logging.getLogger(__name__)

STEP = "Stage"


def authenticated_url(repo_url: str, credential: Optional[str]) -> str:
    """Embed ``credential`` as URL userinfo. Only HTTPS URLs are touched."""
    if not credential or not repo_url.startswith("https://"):
        return repo_url
    parts = urlsplit(repo_url)
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    userinfo = f"token:{quote(credential, safe='')}"
    return urlunsplit((parts.scheme, f"{userinfo}@{netloc}", parts.path, parts.query, parts.fragment))


def redact_url(repo_url: str) -> str:
    """Drop any userinfo from an HTTPS URL."""
    if not repo_url.startswith("https://"):
        return repo_url
    parts = urlsplit(repo_url)
    if "@" not in parts.netloc:
        return repo_url
    return urlunsplit(
        (parts.scheme, parts.netloc.rpartition("@")[2], parts.path, parts.query, parts.fragment)
    )


def _redact(text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***").replace(quote(secret, safe=""), "***")
    return text


class GitCommandError(DeployError):
    """Raised when a git command fails."""

    def __init__(
        self, command: list[str], exit_code: int, stderr: str, secrets: Iterable[str] = ()
    ) -> None:
        secrets = list(secrets)
        self.command = [_redact(part, secrets) for part in command]
        self.stderr = _redact(stderr, secrets)
        super().__init__(
            f"Git command {' '.join(self.command)} failed: {self.stderr}",
            step=STEP,
            exit_code=exit_code,
            hint="Check the repository URL, the access token and network access to the git host.",
        )


@dataclass
class StageResult:
    """Details about a completed clone/update."""

    path: Path
    commit_sha: str
    branch: str
    summary: str = ""
    cloned: bool = False
    stashed: bool = False
    created_branch: bool = False


class GitRepositoryManager:
    """Wraps `git` CLI commands for cloning and updating repositories."""

    def __init__(self, git_binary: str = "git", timeout: int = 600) -> None:
        self.git_binary = git_binary
        self.timeout = timeout
        self._secrets: list[str] = []

    def stage(
        self, repo_url: str, credential: Optional[str], branch: str, target_dir: Path
    ) -> StageResult:
        """Clone or fast-forward ``repo_url`` into ``target_dir`` and check out ``branch``."""
        target_dir = Path(target_dir).resolve()
        self._secrets = [credential] if credential else []
        fetch_url = authenticated_url(repo_url, credential)
        if not repo_url.startswith("https://"):
            logger.info("Using SSH URL - ensure an SSH key is configured for git access")

        if target_dir.exists() and not self._is_working_copy(target_dir):
            logger.warning("Directory exists but is not a Git repository: %s", target_dir)
            logger.info("Removing existing directory and cloning fresh...")
            shutil.rmtree(target_dir)

        cloned = stashed = False
        if not target_dir.exists():
            logger.info("Cloning repository from: %s", redact_url(repo_url))
            target_dir.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._run(["clone", fetch_url, str(target_dir)])
            except GitCommandError:
                shutil.rmtree(target_dir, ignore_errors=True)
                raise
            # origin 只保存不含凭据的 URL
            self._run(["remote", "set-url", "origin", redact_url(repo_url)], cwd=target_dir)
            cloned = True
        else:
            stashed = self._stash_if_dirty(target_dir)
            logger.info("Fetching latest changes from remote...")
            self._run(
                ["fetch", "--prune", fetch_url, "+refs/heads/*:refs/remotes/origin/*"],
                cwd=target_dir,
            )

        created_branch = self._checkout(target_dir, branch)
        commit_sha = self._run(["rev-parse", "HEAD"], cwd=target_dir).strip()
        summary = self._run(["log", "-1", "--oneline"], cwd=target_dir).strip()
        logger.info("Latest commit: %s", summary)
        return StageResult(
            path=target_dir,
            commit_sha=commit_sha,
            branch=branch,
            summary=summary,
            cloned=cloned,
            stashed=stashed,
            created_branch=created_branch,
        )

    def _is_working_copy(self, target_dir: Path) -> bool:
        if not (target_dir / ".git").exists():
            return False
        return self._succeeds(["rev-parse", "--git-dir"], cwd=target_dir)

    def _stash_if_dirty(self, target_dir: Path) -> bool:
        clean = self._succeeds(["diff", "--quiet"], cwd=target_dir) and self._succeeds(
            ["diff", "--cached", "--quiet"], cwd=target_dir
        )
        if clean:
            logger.debug("No local changes detected")
            return False
        logger.warning("Local changes detected. Stashing them...")
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self._run(["stash", "push", "-m", f"shipyard auto-stash {stamp}"], cwd=target_dir)
        return True

    def _checkout(self, target_dir: Path, branch: str) -> bool:
        """Switch to ``branch``; returns True when a tracking branch was created."""
        remote_ref = f"refs/remotes/origin/{branch}"
        if self._succeeds(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=target_dir):
            current = self._run(["rev-parse", "--abbrev-ref", "HEAD"], cwd=target_dir).strip()
            if current != branch:
                logger.info("Switching to existing branch: %s", branch)
                self._run(["checkout", branch], cwd=target_dir)
            if self._succeeds(["show-ref", "--verify", "--quiet", remote_ref], cwd=target_dir):
                self._run(["merge", "--ff-only", f"origin/{branch}"], cwd=target_dir)
            return False

        if self._succeeds(["show-ref", "--verify", "--quiet", remote_ref], cwd=target_dir):
            logger.info("Branch exists remotely. Creating local tracking branch: %s", branch)
            self._run(["checkout", "-b", branch, "--track", f"origin/{branch}"], cwd=target_dir)
            return True

        listing = self._run(["branch", "-r"], cwd=target_dir)
        available = [
            line.strip()
            for line in listing.splitlines()
            if line.strip() and "->" not in line
        ]
        raise BranchNotFoundError(branch, available)

    def _succeeds(self, args: list[str], cwd: Optional[Path] = None) -> bool:
        return self._exec(args, cwd).returncode == 0

    def _run(self, args: list[str], cwd: Optional[Path] = None) -> str:
        process = self._exec(args, cwd)
        if process.returncode != 0:
            raise GitCommandError(
                [self.git_binary] + args, process.returncode, process.stderr.strip(), self._secrets
            )
        return process.stdout

    def _exec(self, args: list[str], cwd: Optional[Path]) -> subprocess.CompletedProcess:
        command = [self.git_binary] + args
        # 禁止 git 交互式询问凭据
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        try:
            return subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                check=False,
                env=env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitCommandError(command, -1, f"timed out after {self.timeout}s", self._secrets) from exc
        except FileNotFoundError as exc:
            raise DeployError(
                f"git executable not found: {self.git_binary}",
                step=STEP,
                hint="Install git locally and make sure it is on PATH.",
            ) from exc
