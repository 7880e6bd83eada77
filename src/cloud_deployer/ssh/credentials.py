"""SSH credential helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SSHCredentials:
    """Address and credential reference of a target host.

    The connection handle itself is owned by the remote executor; this object
    is safe to share between stages.
    """

    host: str
    username: str
    port: int = 22
    auth_method: str = "key"
    password: Optional[str] = None
    key_path: Optional[str] = None
    passphrase: Optional[str] = None
    timeout: int = 20

    @property
    def key(self) -> str:
        """Cache key used by the executor."""
        return f"{self.username}@{self.host}:{self.port}"

    @property
    def resolved_key_path(self) -> Optional[str]:
        return os.path.expanduser(self.key_path) if self.key_path else None

    def validate(self) -> None:
        if not self.host:
            raise ValueError("Target host address is empty")
        if self.auth_method == "password" and not self.password:
            raise ValueError("Password authentication selected but no password provided")
        if self.auth_method == "key" and not self.key_path:
            raise ValueError("Key authentication selected but no key_path provided")

    def __repr__(self) -> str:
        return f"SSHCredentials({self.key}, auth={self.auth_method})"
