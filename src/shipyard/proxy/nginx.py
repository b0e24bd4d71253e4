"""Nginx reverse proxy configuration."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from textwrap import dedent
from typing import List, Optional

from ..config import ProxySettings
from ..ssh.commands import cmd, join_remote
from ..ssh.probe import RemoteHostFacts
from ..ssh.session import SSHSession

logger = logging.getLogger(__name__)

NGINX_ROOT = "/etc/nginx"


def generate_nginx_server_block(server_name: str, port: int, listen: str = "80") -> str:
    """
    Render a server block that proxies everything to the application on localhost.

    :param server_name: domain or "_" for default
    :param port: backend port to proxy to
    :param listen: listen directive
    """
    proxy_block = dedent("""
        proxy_pass http://127.0.0.1:{port};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection 'upgrade';
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_cache_bypass $http_upgrade;
    """).strip().format(port=port)
    # 续行缩进要和下面模板里 {proxy_block} 所在行一致，dedent 后才对齐
    proxy_block = ("\n" + " " * 16).join(proxy_block.splitlines())

    return dedent(f"""
        server {{
            listen {listen};
            server_name {server_name};

            location / {{
                {proxy_block}
            }}
        }}
    """).strip() + "\n"


@dataclass(frozen=True)
class NginxLayout:
    """Where site configs live on this host."""

    config_path: str
    enabled_path: Optional[str] = None   # Debian 系 sites-enabled 软链接
    default_site: Optional[str] = None


@dataclass
class ProxyApplyResult:
    config_path: str
    warnings: List[str] = field(default_factory=list)


class NginxConfigurator:
    """Writes, validates and reloads the application's nginx site."""

    def __init__(
        self,
        session: SSHSession,
        settings: Optional[ProxySettings] = None,
        *,
        command_timeout: int = 300,
        step: str = "ProxyConfigure",
    ) -> None:
        self.session = session
        self.settings = settings or ProxySettings()
        self.command_timeout = command_timeout
        self.step = step

    def render(self, app_port: int) -> str:
        listen = str(self.settings.listen_port)
        if self.settings.server_name == "_":
            listen = f"{listen} default_server"
        return generate_nginx_server_block(self.settings.server_name, app_port, listen=listen)

    def layout(self, app_name: str) -> NginxLayout:
        sites_available = join_remote(NGINX_ROOT, "sites-available")
        if self._run(cmd("test", "-d", sites_available)).ok:
            return NginxLayout(
                config_path=join_remote(sites_available, app_name),
                enabled_path=join_remote(NGINX_ROOT, "sites-enabled", app_name),
                default_site=join_remote(NGINX_ROOT, "sites-enabled", "default"),
            )
        return NginxLayout(
            config_path=join_remote(NGINX_ROOT, "conf.d", f"{app_name}.conf"),
            default_site=join_remote(NGINX_ROOT, "conf.d", "default.conf"),
        )

    def apply(self, app_name: str, app_port: int, facts: RemoteHostFacts) -> ProxyApplyResult:
        layout = self.layout(app_name)
        result = ProxyApplyResult(config_path=layout.config_path)

        staging = f"/tmp/shipyard-{app_name}-{secrets.token_hex(4)}.conf"
        try:
            self.session.put_text(self.render(app_port), staging, mode=0o644)
            self._run(
                cmd("install", "-m", "644", staging, layout.config_path, sudo=True), check=True
            )
        finally:
            self._run(cmd("rm", "-f", staging))
        if layout.enabled_path:
            self._run(
                cmd("ln", "-sfn", layout.config_path, layout.enabled_path, sudo=True), check=True
            )

        if layout.default_site:
            removed = self._run(cmd("rm", "-f", layout.default_site, sudo=True))
            if not removed.ok:
                message = f"Could not remove default nginx site {layout.default_site}: {removed.stderr}"
                logger.warning(message)
                result.warnings.append(message)

        self.test_and_reload(facts)
        logger.info("Nginx proxies :%s -> 127.0.0.1:%s", self.settings.listen_port, app_port)
        return result

    def restore(
        self,
        app_name: str,
        backup_path: Optional[str],
        facts: RemoteHostFacts,
        default_site: Optional[str] = None,
        default_site_backup: Optional[str] = None,
    ) -> None:
        """Put back the previous site config, or remove ours if there was none.

        A default site removed by :meth:`apply` is copied back from its backup
        (a symlink stays a symlink).
        """
        layout = self.layout(app_name)
        if backup_path:
            self._run(cmd("cp", "-p", backup_path, layout.config_path, sudo=True), check=True)
            if layout.enabled_path:
                self._run(
                    cmd("ln", "-sfn", layout.config_path, layout.enabled_path, sudo=True),
                    check=True,
                )
        else:
            targets = [layout.config_path] + ([layout.enabled_path] if layout.enabled_path else [])
            self._run(cmd("rm", "-f", *targets, sudo=True), check=True)
        if default_site and default_site_backup:
            self._run(cmd("cp", "-pP", default_site_backup, default_site, sudo=True), check=True)
        self.test_and_reload(facts)

    def test_and_reload(self, facts: RemoteHostFacts) -> None:
        self._run(cmd("nginx", "-t", sudo=True), check=True)
        if facts.has_systemd:
            self._run(cmd("systemctl", "reload-or-restart", "nginx", sudo=True), check=True)
            return
        if not self._run(cmd("nginx", "-s", "reload", sudo=True)).ok:
            # master 进程没在跑：直接启动
            self._run(cmd("nginx", sudo=True), check=True)

    def _run(self, command, check: bool = False):
        return self.session.execute(
            command, check=check, timeout=self.command_timeout, step=self.step
        )
