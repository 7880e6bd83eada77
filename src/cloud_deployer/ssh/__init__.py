"""SSH utilities for cloud-deployer."""

from .credentials import SSHCredentials
from .session import SSHAuthenticationError, SSHCommandResult, SSHConnectionError, SSHSession
from .executor import RemoteExecutor
from .probe import RemoteHostFacts, RemoteProbe

__all__ = [
    "SSHCredentials",
    "SSHAuthenticationError",
    "SSHCommandResult",
    "SSHConnectionError",
    "SSHSession",
    "RemoteExecutor",
    "RemoteHostFacts",
    "RemoteProbe",
]
