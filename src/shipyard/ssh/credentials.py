"""SSH target helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from ..errors import ValidationError


@dataclass(frozen=True)
class RemoteTarget:
    """The machine under provisioning. Immutable after construction."""

    host: str
    username: str
    port: int = 22
    key_path: Optional[str] = None
    passphrase: Optional[str] = field(default=None, repr=False)
    timeout: int = 20

    @property
    def is_root(self) -> bool:
        return self.username == "root"

    @property
    def address(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def lock_key(self) -> str:
        """Name used to serialize runs against this host."""
        return self.host.lower()


def parse_host_spec(spec: str, default_user: Optional[str] = None) -> Tuple[str, str]:
    """Split ``user@host`` into ``(user, host)``; the user part is optional."""
    spec = (spec or "").strip()
    if "@" in spec:
        user, _, host = spec.rpartition("@")
    else:
        user, host = default_user or "", spec
    if not host:
        raise ValidationError("remote target must look like user@host")
    if not user:
        raise ValidationError(f"no SSH user given for host '{host}' (use user@host)")
    return user, host
