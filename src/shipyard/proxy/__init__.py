"""Reverse proxy configuration."""

from .nginx import NginxConfigurator, NginxLayout, ProxyApplyResult, generate_nginx_server_block

__all__ = [
    "NginxConfigurator",
    "NginxLayout",
    "ProxyApplyResult",
    "generate_nginx_server_block",
]
