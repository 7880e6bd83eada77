"""SSH session management built on Paramiko."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import paramiko

from .credentials import SSHCredentials

logger = logging.getLogger(__name__)


class SSHConnectionError(RuntimeError):
    """Raised when an SSH connection cannot be established."""

    pass


class SSHAuthenticationError(SSHConnectionError):
    """Raised when the host rejects the supplied credentials."""

    pass


@dataclass
class SSHCommandResult:
    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class SSHSession:
    """High-level wrapper around paramiko.SSHClient."""

    POLL_INTERVAL = 0.1

    def __init__(
        self,
        credentials: SSHCredentials,
        *,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.credentials = credentials
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[paramiko.SSHClient] = None
        self._clock = clock
        self._sleep = sleep

    @property
    def connected(self) -> bool:
        return self._client is not None

    def __enter__(self) -> "SSHSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def connect(self) -> None:
        if self._client:
            return
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            connect_kwargs = {
                "hostname": self.credentials.host,
                "port": self.credentials.port,
                "username": self.credentials.username,
                "timeout": self.credentials.timeout,
                "look_for_keys": False,
                "allow_agent": False,
            }
            if self.credentials.auth_method == "password":
                connect_kwargs["password"] = self.credentials.password
            else:
                connect_kwargs["key_filename"] = self.credentials.resolved_key_path
                if self.credentials.passphrase:
                    connect_kwargs["passphrase"] = self.credentials.passphrase
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as exc:
            client.close()
            raise SSHAuthenticationError(
                f"Authentication rejected by {self.credentials.key}: {exc}"
            ) from exc
        except Exception as exc:  # pragma: no cover - network errors hard to simulate
            client.close()
            raise SSHConnectionError(str(exc)) from exc
        self._client = client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def run(self, command: str, *, timeout: Optional[float] = None) -> SSHCommandResult:
        """
        Execute a command on the remote server and wait for it to finish.

        A non-zero exit status is returned, not raised. When the command does
        not finish within `timeout` seconds the channel is closed and the
        result carries exit status -1 with a ``TIMEOUT:`` stderr.
        """
        if not self._client:
            self.connect()
        assert self._client is not None

        if timeout is None:
            timeout = 600  # 默认10分钟总超时

        try:
            _stdin, stdout, stderr = self._client.exec_command(command, timeout=timeout)
        except (paramiko.SSHException, OSError) as exc:
            # 传输层断开：丢弃客户端，下次调用时重连
            self.close()
            raise SSHConnectionError(f"Lost connection to {self.credentials.key}: {exc}") from exc

        channel = stdout.channel
        channel.setblocking(0)
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        deadline = self._clock() + timeout

        # 边执行边读取输出，避免输出填满窗口后阻塞
        while not channel.exit_status_ready():
            self._drain(channel, stdout_chunks, stderr_chunks)
            if self._clock() >= deadline:
                channel.close()
                return SSHCommandResult(
                    command=command,
                    stdout="".join(stdout_chunks).strip(),
                    stderr=f"TIMEOUT: Command did not complete within {timeout} seconds.",
                    exit_status=-1,
                )
            self._sleep(self.POLL_INTERVAL)

        # 读取剩余输出
        self._drain(channel, stdout_chunks, stderr_chunks)
        exit_status = channel.recv_exit_status()

        return SSHCommandResult(
            command=command,
            stdout="".join(stdout_chunks).strip(),
            stderr="".join(stderr_chunks).strip(),
            exit_status=exit_status,
        )

    @staticmethod
    def _drain(channel, stdout_chunks: list[str], stderr_chunks: list[str]) -> None:
        while channel.recv_ready():
            stdout_chunks.append(channel.recv(4096).decode("utf-8", errors="replace"))
        while channel.recv_stderr_ready():
            stderr_chunks.append(channel.recv_stderr(4096).decode("utf-8", errors="replace"))

    def write_file(self, path: str, content: str, mode: int = 0o644) -> None:
        """Upload `content` to `path` on the remote host over SFTP."""
        if not self._client:
            self.connect()
        assert self._client is not None

        sftp = self._client.open_sftp()
        try:
            # SFTP 不展开 ~，相对路径以用户主目录为基准
            remote_path = path[2:] if path.startswith("~/") else path
            with sftp.open(remote_path, "w") as handle:
                handle.write(content)
            sftp.chmod(remote_path, mode)
        finally:
            sftp.close()
        logger.debug("Uploaded %d bytes to %s:%s", len(content), self.credentials.host, path)
