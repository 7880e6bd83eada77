"""Deadline-bounded polling of HTTP, TCP and remote-command conditions."""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple

import requests

from ..ssh import RemoteExecutor, SSHCredentials, SSHConnectionError
from ..errors import StageError

logger = logging.getLogger(__name__)


class CheckKind(str, Enum):
    HTTP = "http"
    TCP = "tcp"
    COMMAND = "command"


class ProbeStatus(str, Enum):
    HEALTHY = "healthy"
    TIMEOUT = "timeout"
    FAILED = "failed"     # 逻辑失败超过容忍阈值，提前结束


@dataclass(frozen=True)
class HealthCheckSpec:
    """What to poll and how long to keep trying.

    Build instances with `http()`, `tcp()` or `command()`.
    """

    kind: CheckKind
    name: str = ""
    url: Optional[str] = None
    expected_status: int = 200
    expected_content: Optional[str] = None
    address: Optional[str] = None
    port: Optional[int] = None
    host: Optional[SSHCredentials] = None
    command: Optional[str] = None
    interval: float = 10.0
    deadline: float = 300.0
    request_timeout: float = 10.0
    failure_threshold: Optional[int] = None
    verify_tls: bool = True

    @classmethod
    def http(cls, url: str, *, expected_status: int = 200, expected_content: Optional[str] = None,
             **kwargs: Any) -> "HealthCheckSpec":
        return cls(kind=CheckKind.HTTP, name=kwargs.pop("name", url), url=url,
                   expected_status=expected_status, expected_content=expected_content, **kwargs)

    @classmethod
    def tcp(cls, address: str, port: int, **kwargs: Any) -> "HealthCheckSpec":
        return cls(kind=CheckKind.TCP, name=kwargs.pop("name", f"{address}:{port}"),
                   address=address, port=port, **kwargs)

    @classmethod
    def command(cls, host: SSHCredentials, command: str, **kwargs: Any) -> "HealthCheckSpec":
        return cls(kind=CheckKind.COMMAND, name=kwargs.pop("name", command),
                   host=host, command=command, **kwargs)


@dataclass
class ProbeResult:
    status: ProbeStatus
    attempts: int
    last_value: Any
    elapsed: float

    @property
    def ok(self) -> bool:
        return self.status == ProbeStatus.HEALTHY

    def describe(self) -> str:
        return (
            f"{self.status.value} after {self.attempts} attempt(s) in {self.elapsed:.1f}s "
            f"(last observed: {self.last_value!r})"
        )


class _TransportError(Exception):
    """A poll could not reach the target; counts as "not yet healthy"."""


class HealthProber:
    """Polls a `HealthCheckSpec` until it holds or its deadline passes.

    The clock and sleep functions are injectable so timing behaviour can be
    exercised without waiting.
    """

    def __init__(
        self,
        *,
        executor: Optional[RemoteExecutor] = None,
        http_session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = executor
        self.http = http_session or requests.Session()
        self._clock = clock
        self._sleep = sleep

    def wait_for(self, spec: HealthCheckSpec, deadline: Optional[float] = None) -> ProbeResult:
        """Poll until healthy, timeout, or the failure threshold is hit.

        `deadline` (seconds) overrides ``spec.deadline``. The prober never
        sleeps past the deadline and makes its last poll at the boundary, so a
        condition that never holds times out at the deadline, not before.
        """
        budget = spec.deadline if deadline is None else deadline
        start = self._clock()
        end = start + budget
        attempts = 0
        consecutive_failures = 0
        last_value: Any = None

        while True:
            attempts += 1
            remaining = max(end - self._clock(), 0.0)
            try:
                healthy, last_value = self._poll(spec, remaining)
                if healthy:
                    logger.info("   ✅ %s healthy after %d poll(s)", spec.name, attempts)
                    return ProbeResult(ProbeStatus.HEALTHY, attempts, last_value, self._clock() - start)
                consecutive_failures += 1
                if spec.failure_threshold and consecutive_failures >= spec.failure_threshold:
                    logger.warning(
                        "   ❌ %s failed %d consecutive checks (last: %r)",
                        spec.name, consecutive_failures, last_value,
                    )
                    return ProbeResult(ProbeStatus.FAILED, attempts, last_value, self._clock() - start)
            except _TransportError as exc:
                last_value = str(exc)
                logger.debug("   %s not reachable yet: %s", spec.name, exc)

            remaining = end - self._clock()
            if remaining <= 0:
                logger.warning("   ⏱️ %s not healthy within %.0fs", spec.name, budget)
                return ProbeResult(ProbeStatus.TIMEOUT, attempts, last_value, self._clock() - start)
            self._sleep(min(spec.interval, remaining))

    def _poll(self, spec: HealthCheckSpec, remaining: float) -> Tuple[bool, Any]:
        if spec.kind == CheckKind.HTTP:
            return self._poll_http(spec, remaining)
        if spec.kind == CheckKind.TCP:
            return self._poll_tcp(spec, remaining)
        return self._poll_command(spec, remaining)

    def _poll_http(self, spec: HealthCheckSpec, remaining: float) -> Tuple[bool, Any]:
        timeout = max(min(spec.request_timeout, remaining), 1.0)
        try:
            response = self.http.get(spec.url, timeout=timeout, verify=spec.verify_tls)
        except requests.RequestException as exc:
            raise _TransportError(exc) from exc
        if response.status_code != spec.expected_status:
            return False, response.status_code
        if spec.expected_content and spec.expected_content not in response.text:
            return False, f"{response.status_code}: content mismatch"
        return True, response.status_code

    def _poll_tcp(self, spec: HealthCheckSpec, remaining: float) -> Tuple[bool, Any]:
        timeout = max(min(spec.request_timeout, remaining), 1.0)
        try:
            with socket.create_connection((spec.address, spec.port), timeout=timeout):
                return True, "open"
        except OSError as exc:
            raise _TransportError(exc) from exc

    def _poll_command(self, spec: HealthCheckSpec, remaining: float) -> Tuple[bool, Any]:
        if self.executor is None or spec.host is None:
            raise ValueError("command health checks need an executor and a host")
        timeout = int(max(min(spec.request_timeout, remaining), 1.0))
        try:
            result = self.executor.run(spec.host, spec.command, timeout=timeout)
        except (StageError, SSHConnectionError) as exc:
            if isinstance(exc, StageError) and not exc.kind.retryable:
                raise
            raise _TransportError(exc) from exc
        return result.ok, result.exit_status
