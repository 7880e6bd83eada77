"""Host-keyed remote command execution with connect retry."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from ..errors import AuthenticationError, ErrorKind, StageError
from .credentials import SSHCredentials
from .session import SSHAuthenticationError, SSHCommandResult, SSHConnectionError, SSHSession

logger = logging.getLogger(__name__)


class RemoteExecutor:
    """Runs commands on target hosts, caching one session per host.

    Commands for the same host are serialized so two stages never interleave
    on one SSH session; different hosts proceed in parallel.
    """

    def __init__(
        self,
        *,
        connect_attempts: int = 3,
        connect_delay: float = 10.0,
        default_timeout: int = 600,
        session_factory: Callable[[SSHCredentials], SSHSession] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.connect_attempts = max(1, connect_attempts)
        self.connect_delay = connect_delay
        self.default_timeout = default_timeout
        self._session_factory = session_factory or SSHSession
        self._sleep = sleep
        self._sessions: Dict[str, SSHSession] = {}
        self._host_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, host: SSHCredentials) -> threading.Lock:
        with self._registry_lock:
            lock = self._host_locks.get(host.key)
            if lock is None:
                lock = threading.Lock()
                self._host_locks[host.key] = lock
            return lock

    def _session_for(self, host: SSHCredentials) -> SSHSession:
        """Return a connected session; caller must hold the host lock."""
        session = self._sessions.get(host.key)
        if session is not None and session.connected:
            return session

        session = self._session_factory(host)
        last_error: Optional[Exception] = None
        for attempt in range(1, self.connect_attempts + 1):
            try:
                session.connect()
                self._sessions[host.key] = session
                if attempt > 1:
                    logger.info("🔗 Connected to %s after %d attempts", host.key, attempt)
                return session
            except SSHAuthenticationError as exc:
                raise AuthenticationError(str(exc)) from exc
            except SSHConnectionError as exc:
                last_error = exc
                logger.warning(
                    "   SSH connect to %s failed (%d/%d): %s",
                    host.key, attempt, self.connect_attempts, exc,
                )
                if attempt < self.connect_attempts:
                    self._sleep(self.connect_delay)

        raise StageError(
            f"Could not connect to {host.key} after {self.connect_attempts} attempts: {last_error}",
            kind=ErrorKind.TRANSIENT,
        )

    def run(
        self,
        host: SSHCredentials,
        command: str,
        timeout: Optional[float] = None,
    ) -> SSHCommandResult:
        """Run `command` on `host`; the exit status is returned, not raised."""
        with self._lock_for(host):
            session = self._session_for(host)
            logger.debug("$ [%s] %s", host.host, command)
            try:
                budget = self.default_timeout if timeout is None else timeout
                return session.run(command, timeout=budget)
            except SSHConnectionError as exc:
                self._sessions.pop(host.key, None)
                raise StageError(str(exc), kind=ErrorKind.TRANSIENT) from exc

    def check(
        self,
        host: SSHCredentials,
        command: str,
        timeout: Optional[float] = None,
        *,
        kind: ErrorKind = ErrorKind.TRANSIENT,
    ) -> SSHCommandResult:
        """Run `command` and raise `StageError` when it exits non-zero."""
        result = self.run(host, command, timeout)
        if not result.ok:
            detail = result.stderr or result.stdout or "no output"
            raise StageError(
                f"`{command}` exited with {result.exit_status}: {detail[:500]}",
                kind=kind,
            )
        return result

    def write_file(self, host: SSHCredentials, path: str, content: str, mode: int = 0o644) -> None:
        with self._lock_for(host):
            session = self._session_for(host)
            try:
                session.write_file(path, content, mode)
            except (SSHConnectionError, OSError) as exc:
                self._sessions.pop(host.key, None)
                session.close()
                raise StageError(f"Upload to {host.key}:{path} failed: {exc}") from exc

    def wait_until_reachable(self, host: SSHCredentials) -> None:
        """Block until a session to `host` can be opened (bounded by connect retry)."""
        with self._lock_for(host):
            self._session_for(host)

    def close(self, host: SSHCredentials) -> None:
        with self._lock_for(host):
            session = self._sessions.pop(host.key, None)
            if session:
                session.close()

    def close_all(self) -> None:
        with self._registry_lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
