"""On-host snapshot record and rollback."""

from __future__ import annotations

import logging
import secrets
from dataclasses import replace
from datetime import datetime
from io import StringIO
from typing import Optional

from dotenv import dotenv_values

from ..errors import DeployError, RollbackError
from ..proxy import NginxConfigurator
from ..ssh.commands import cmd, join_remote
from ..ssh.probe import RemoteHostFacts
from ..ssh.session import SSHSession
from .models import DeploymentConfig, RuntimeKind, Snapshot
from .runtime import ApplicationRuntime

logger = logging.getLogger(__name__)

RECORD_NAME = "snapshot.env"
PROXY_BACKUP_NAME = "proxy.conf.previous"
DEFAULT_SITE_BACKUP_NAME = "default-site.previous"


def render_record(snapshot: Snapshot) -> str:
    lines = []
    for key, value in snapshot.to_record().items():
        if "'" in value or "\n" in value:
            raise ValueError(f"snapshot value for {key} cannot be stored: {value!r}")
        lines.append(f"{key}='{value}'")
    return "\n".join(lines) + "\n"


def parse_record(text: str) -> Optional[Snapshot]:
    values = dotenv_values(stream=StringIO(text))
    if not values.get("APP_NAME"):
        return None
    return Snapshot.from_record(values)


class SnapshotStore:
    """Keeps one key-value snapshot record per target in ``<app_dir>/.shipyard``."""

    def __init__(
        self,
        session: SSHSession,
        config: DeploymentConfig,
        *,
        command_timeout: int = 300,
    ) -> None:
        self.session = session
        self.config = config
        self.command_timeout = command_timeout
        self.record_path = join_remote(config.state_dir, RECORD_NAME)
        self.proxy_backup_path = join_remote(config.state_dir, PROXY_BACKUP_NAME)
        self.default_site_backup_path = join_remote(config.state_dir, DEFAULT_SITE_BACKUP_NAME)

    def snapshot_runtime(
        self, runtime: ApplicationRuntime, base: Optional[Snapshot] = None, step: str = "Run"
    ) -> Snapshot:
        """Record the image/container that is live before it gets replaced."""
        image_ref, container_id = runtime.capture(step=step)
        release_dir = self.live_release(step)
        env_file = None
        if release_dir and self._exists(join_remote(release_dir, ".env"), step):
            env_file = join_remote(release_dir, ".env")
        snapshot = Snapshot(
            app_name=self.config.app_name,
            runtime=runtime.kind,
            created_at=datetime.now().isoformat(timespec="seconds"),
            compose_file=runtime.manifest_path if runtime.kind is RuntimeKind.COMPOSE else None,
            previous_image_ref=image_ref,
            previous_container_id=container_id,
            previous_release_dir=release_dir,
            previous_env_file=env_file,
        )
        if base is not None:
            snapshot = replace(
                snapshot,
                proxy_config_path=base.proxy_config_path,
                previous_proxy_config_path=base.previous_proxy_config_path,
                default_site_path=base.default_site_path,
                previous_default_site_path=base.previous_default_site_path,
            )
        logger.info(
            "Snapshot: previous container %s, image %s",
            container_id or "(none)",
            image_ref or "(none)",
        )
        self.save(snapshot, step=step)
        return snapshot

    def snapshot_proxy(
        self, snapshot: Snapshot, proxy: NginxConfigurator, step: str = "ProxyConfigure"
    ) -> Snapshot:
        """Back up the current site config and the default site before they change."""
        layout = proxy.layout(self.config.app_name)
        config_path = layout.config_path
        backup: Optional[str] = None
        if self._run(cmd("test", "-f", config_path, sudo=True), step).ok:
            self._run(cmd("mkdir", "-p", self.config.state_dir, sudo=True), step, check=True)
            self._run(cmd("cp", "-p", config_path, self.proxy_backup_path, sudo=True), step, check=True)
            backup = self.proxy_backup_path

        default_site: Optional[str] = None
        default_backup: Optional[str] = None
        if layout.default_site and self._exists(layout.default_site, step):
            self._run(cmd("mkdir", "-p", self.config.state_dir, sudo=True), step, check=True)
            # -P：Debian 的 default 是软链接，按软链接备份
            self._run(
                cmd("cp", "-pP", layout.default_site, self.default_site_backup_path, sudo=True),
                step,
                check=True,
            )
            default_site = layout.default_site
            default_backup = self.default_site_backup_path

        snapshot = replace(
            snapshot,
            proxy_config_path=config_path,
            previous_proxy_config_path=backup,
            default_site_path=default_site,
            previous_default_site_path=default_backup,
        )
        logger.info("Snapshot: proxy config %s (backup: %s)", config_path, backup or "none")
        if default_site:
            logger.info("Snapshot: default site %s backed up", default_site)
        self.save(snapshot, step=step)
        return snapshot

    def save(self, snapshot: Snapshot, step: Optional[str] = None) -> None:
        staging = f"/tmp/shipyard-{self.config.app_name}-{secrets.token_hex(4)}.env"
        try:
            self.session.put_text(render_record(snapshot), staging, mode=0o600)
            self._run(cmd("mkdir", "-p", self.config.state_dir, sudo=True), step, check=True)
            self._run(
                cmd("install", "-m", "600", staging, self.record_path, sudo=True), step, check=True
            )
        finally:
            self._run(cmd("rm", "-f", staging), step)

    def live_release(self, step: Optional[str] = None) -> Optional[str]:
        """Release directory the ``current`` link points at, if any."""
        result = self._run(cmd("readlink", self.config.current_link, sudo=True), step)
        target = result.stdout.strip()
        return target if result.ok and target else None

    def activate(self, release_dir: Optional[str], step: Optional[str] = None) -> None:
        """Point ``current`` at ``release_dir``; ``None`` removes the link."""
        if release_dir:
            command = cmd("ln", "-sfn", release_dir, self.config.current_link, sudo=True)
        else:
            command = cmd("rm", "-f", self.config.current_link, sudo=True)
        self._run(command, step, check=True)

    def remove_release(self, release_dir: Optional[str], step: Optional[str] = None) -> None:
        if not release_dir or not release_dir.startswith(self.config.releases_dir + "/"):
            return
        self._run(cmd("rm", "-rf", release_dir, sudo=True), step)

    def load(self, step: Optional[str] = None) -> Optional[Snapshot]:
        result = self._run(cmd("cat", self.record_path, sudo=True), step)
        if not result.ok:
            return None
        return parse_record(result.stdout)

    def delete(self, step: Optional[str] = None) -> None:
        self._run(
            cmd(
                "rm",
                "-f",
                self.record_path,
                self.proxy_backup_path,
                self.default_site_backup_path,
                sudo=True,
            ),
            step,
        )

    def discard(self, snapshot: Snapshot, runtime: ApplicationRuntime, step: str = "Verify") -> None:
        """Drop the snapshot and the replaced release after a verified deployment."""
        runtime.discard(snapshot, step=step)
        if snapshot.previous_release_dir != runtime.release_dir:
            self.remove_release(snapshot.previous_release_dir, step=step)
        self.delete(step=step)
        logger.debug("Snapshot discarded")

    def rollback(
        self,
        snapshot: Snapshot,
        runtime: ApplicationRuntime,
        proxy: Optional[NginxConfigurator],
        facts: RemoteHostFacts,
        step: str = "Rollback",
    ) -> None:
        """Restore the previous container/image and proxy config, then re-verify."""
        logger.warning("Rolling back to snapshot taken at %s", snapshot.created_at)
        try:
            runtime.restore(snapshot, step=step)
        except DeployError as exc:
            raise RollbackError(
                f"Could not restore the previous {runtime.kind.value}: {exc.message}", step=step
            ) from exc

        if snapshot.proxy_config_path:
            if proxy is None:
                raise RollbackError("Proxy config changed but nginx is not reachable", step=step)
            try:
                proxy.restore(
                    self.config.app_name,
                    snapshot.previous_proxy_config_path,
                    facts,
                    default_site=snapshot.default_site_path,
                    default_site_backup=snapshot.previous_default_site_path,
                )
            except DeployError as exc:
                raise RollbackError(
                    f"Could not restore the previous proxy config: {exc.message}", step=step
                ) from exc

        try:
            running = runtime.is_running(step=step)
        except DeployError as exc:
            raise RollbackError(f"Could not verify the restored deployment: {exc.message}", step=step) from exc
        if snapshot.has_previous_runtime and not running:
            raise RollbackError("The previous deployment was restored but is not running", step=step)

        try:
            self.activate(snapshot.previous_release_dir, step=step)
        except DeployError as exc:
            raise RollbackError(f"Could not re-link the previous release: {exc.message}", step=step) from exc
        if runtime.release_dir != snapshot.previous_release_dir:
            self.remove_release(runtime.release_dir, step=step)

        self.delete(step=step)
        logger.info("Rollback complete")

    def _exists(self, path: str, step: Optional[str]) -> bool:
        # 悬空的软链接 test -e 为假，但仍然会被 rm 掉
        if self._run(cmd("test", "-L", path, sudo=True), step).ok:
            return True
        return self._run(cmd("test", "-e", path, sudo=True), step).ok

    def _run(self, command, step: Optional[str], check: bool = False):
        return self.session.execute(command, check=check, timeout=self.command_timeout, step=step)
