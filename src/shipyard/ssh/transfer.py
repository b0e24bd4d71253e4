"""Archive-based file transfer to the remote host."""

from __future__ import annotations

import logging
import secrets
import tarfile
import tempfile
from pathlib import Path
from typing import Optional

from .commands import cmd, join_remote
from .session import SSHSession

logger = logging.getLogger(__name__)

EXCLUDED_NAMES = {".git"}


def _exclude_vcs(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
    if EXCLUDED_NAMES.intersection(Path(info.name).parts):
        return None
    return info


class FileTransfer:
    """Copies a staged source tree (as a tar.gz) and single files to the host."""

    def __init__(self, session: SSHSession, *, timeout: int = 300, step: str = "Transfer") -> None:
        self.session = session
        self.timeout = timeout
        self.step = step

    def push_directory(self, local_dir: Path, release_dir: str, app_name: str) -> str:
        """Unpack the contents of ``local_dir`` into ``<release_dir>/src``.

        The release directory is new for every deployment, so the live release
        is never touched. Returns the remote source directory.
        """
        remote_src = join_remote(release_dir, "src")
        remote_archive = self._remote_temp(app_name, ".tar.gz")
        archive = self.build_archive(local_dir)
        try:
            size_kb = archive.stat().st_size / 1024
            logger.info("Uploading %s (%.1f KiB) to %s", local_dir, size_kb, remote_archive)
            try:
                self.session.upload(archive, remote_archive)
                for command in (
                    # 上一次失败尝试留下的半成品
                    cmd("rm", "-rf", remote_src, sudo=True),
                    cmd("mkdir", "-p", remote_src, sudo=True),
                    cmd("tar", "-xzf", remote_archive, "-C", remote_src, sudo=True),
                ):
                    self.session.execute(command, check=True, timeout=self.timeout, step=self.step)
            finally:
                self.session.execute(
                    cmd("rm", "-f", remote_archive, sudo=True), timeout=self.timeout, step=self.step
                )
        finally:
            archive.unlink(missing_ok=True)
        return remote_src

    def push_file(self, local_path: Path, remote_path: str, app_name: str, mode: str = "600") -> None:
        """Upload one file and install it at ``remote_path`` with ``mode``."""
        remote_tmp = self._remote_temp(app_name, ".upload")
        try:
            self.session.upload(Path(local_path).expanduser(), remote_tmp)
            self.session.execute(
                cmd("install", "-D", "-m", mode, remote_tmp, remote_path, sudo=True),
                check=True,
                timeout=self.timeout,
                step=self.step,
            )
        finally:
            self.session.execute(cmd("rm", "-f", remote_tmp), timeout=self.timeout, step=self.step)

    @staticmethod
    def build_archive(local_dir: Path) -> Path:
        """Pack ``local_dir`` into a temporary tar.gz; the caller removes it."""
        handle = tempfile.NamedTemporaryFile(prefix="shipyard-", suffix=".tar.gz", delete=False)
        handle.close()
        archive = Path(handle.name)
        try:
            with tarfile.open(archive, "w:gz") as tar:
                tar.add(str(local_dir), arcname=".", filter=_exclude_vcs)
        except BaseException:
            archive.unlink(missing_ok=True)
            raise
        return archive

    @staticmethod
    def _remote_temp(app_name: str, suffix: str) -> str:
        return f"/tmp/shipyard-{app_name}-{secrets.token_hex(4)}{suffix}"
