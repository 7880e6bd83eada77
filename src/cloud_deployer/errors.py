"""Structured errors shared by stage actions and the stage runner."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """How the runner should treat a failed attempt."""

    TRANSIENT = "transient"          # 网络超时、限流、SSH 启动窗口
    FATAL = "fatal"                  # 认证/授权失败，不重试
    PARTIAL = "partial"              # 部分资源已创建
    VERIFICATION = "verification"    # 健康检查未通过
    TIMEOUT = "timeout"              # 超过阶段硬截止时间
    CANCELLED = "cancelled"          # 操作员中止

    @property
    def retryable(self) -> bool:
        return self not in (ErrorKind.FATAL, ErrorKind.CANCELLED)


class StageError(RuntimeError):
    """Raised by stage actions to report a classified failure."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        partial_outputs: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.message = message
        self.partial_outputs = dict(partial_outputs or {})


class ProvisionError(StageError):
    """Raised when the infrastructure tool fails."""


class CertificateError(StageError):
    """Raised when certificate issuance or activation fails."""


class AuthenticationError(StageError):
    """Credentials were rejected; retrying cannot help."""

    kind = ErrorKind.FATAL


class StageDeferred(RuntimeError):
    """The stage cannot proceed without operator action.

    The runner leaves the stage ``pending`` (never ``failed``) and halts the run
    without rolling anything back.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PlanValidationError(ValueError):
    """Raised when a deployment plan is malformed (cycles, unknown deps)."""


class RunStateError(RuntimeError):
    """Raised when persisted run state cannot be used as requested."""
