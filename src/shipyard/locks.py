"""Per-target run lock: one deployment at a time against the same host."""

from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path
from typing import Optional

from .errors import DeploymentLockedError

logger = logging.getLogger(__name__)

# 刚创建、还没写入 PID 的锁文件视为被占用
UNOWNED_LOCK_GRACE_SECONDS = 30


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # 进程存在但属于其他用户
        return True
    return True


class TargetLock:
    """
    Exclusive lock file ``<locks_dir>/<key>.lock`` holding the owner PID.

    Usage:
        with TargetLock(LOCKS_DIR, target.lock_key()):
            orchestrator.run()
    """

    def __init__(self, locks_dir: Path, key: str) -> None:
        safe_key = re.sub(r"[^A-Za-z0-9_.-]+", "_", key) or "target"
        self.path = Path(locks_dir) / f"{safe_key}.lock"
        self.key = key
        self._held = False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self._owner_pid()
                if owner is None:
                    age = self._age()
                    if age is not None and age < UNOWNED_LOCK_GRACE_SECONDS:
                        raise DeploymentLockedError(
                            f"Another deployment to {self.key} is starting",
                            step="Validate",
                            hint=f"Retry in a moment, or remove {self.path} if no deployment is running.",
                        )
                elif _pid_alive(owner):
                    raise DeploymentLockedError(
                        f"Another deployment to {self.key} is in progress (pid {owner})",
                        step="Validate",
                        hint=f"Wait for it to finish, or remove {self.path} if that process is gone.",
                    )
                logger.warning("Reclaiming stale lock %s (owner pid %s)", self.path, owner)
                self._remove()
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            self._held = True
            logger.debug("Acquired lock %s", self.path)
            return
        raise DeploymentLockedError(
            f"Could not acquire the lock for {self.key}", step="Validate", hint=f"Check {self.path}."
        )

    def release(self) -> None:
        if self._held:
            self._remove()
            self._held = False
            logger.debug("Released lock %s", self.path)

    def _owner_pid(self) -> Optional[int]:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def _age(self) -> Optional[float]:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "TargetLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
