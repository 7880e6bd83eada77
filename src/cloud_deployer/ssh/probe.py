"""Remote host probing utilities."""

from __future__ import annotations

from dataclasses import dataclass

from .credentials import SSHCredentials
from .executor import RemoteExecutor


@dataclass
class RemoteHostFacts:
    hostname: str
    kernel: str
    os_release: str
    has_docker: bool = False
    has_compose: bool = False   # docker compose v2 插件


class RemoteProbe:
    """Collects remote host facts by running simple commands."""

    def __init__(self, executor: RemoteExecutor) -> None:
        self.executor = executor

    def collect(self, host: SSHCredentials) -> RemoteHostFacts:
        hostname = self._safe_run(host, "hostname")
        kernel = self._safe_run(host, "uname -sr")
        os_release = self._safe_run(
            host,
            ". /etc/os-release 2>/dev/null && echo \"$PRETTY_NAME\" || uname -sr",
        )
        has_docker = self.executor.run(host, "command -v docker >/dev/null 2>&1").ok
        has_compose = has_docker and self.executor.run(
            host, "docker compose version >/dev/null 2>&1"
        ).ok

        return RemoteHostFacts(
            hostname=hostname or "unknown",
            kernel=kernel or "unknown",
            os_release=os_release or "unknown",
            has_docker=has_docker,
            has_compose=has_compose,
        )

    def _safe_run(self, host: SSHCredentials, command: str) -> str:
        result = self.executor.run(host, command)
        return result.stdout or result.stderr
