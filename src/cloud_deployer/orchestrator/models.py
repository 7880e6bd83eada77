"""Data models for the orchestrator module."""

from __future__ import annotations

import heapq
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import ErrorKind, PlanValidationError, StageError


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StageStatus(str, Enum):
    """阶段执行状态"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RunStatus(str, Enum):
    """整体运行状态"""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    HALTED = "halted"          # 等待操作员处理（如 DNS 未就绪）
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RetryPolicy:
    """Per-stage retry settings.

    Backoff after failed attempt ``n`` is ``base * 2**(n-1)`` plus up to
    ``jitter`` of that again, capped at ``max_delay``. Because the jittered
    value stays below the next attempt's un-jittered base, delays never
    decrease from one attempt to the next. An explicit ``schedule`` replaces
    the exponential curve; its last entry repeats.
    """

    max_attempts: int = 3
    base_delay: float = 5.0
    max_delay: float = 60.0
    jitter: float = 0.5
    schedule: Optional[Tuple[float, ...]] = None
    timeout: Optional[float] = None      # 单次尝试的硬截止时间（秒）

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")
        if self.schedule is not None:
            object.__setattr__(self, "schedule", tuple(self.schedule))

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Backoff to apply after failed attempt number `attempt` (1-based)."""
        if self.schedule:
            return float(self.schedule[min(attempt, len(self.schedule)) - 1])
        base = self.base_delay * (2 ** (attempt - 1))
        return min(self.max_delay, base + rng() * self.jitter * base)


@dataclass
class Output:
    """A value produced by a stage; sensitive values never reach logs or disk."""

    value: Any
    sensitive: bool = False
    kind: str = "string"
    stage: Optional[str] = None
    redacted: bool = False   # 从持久化状态恢复，值已被清除

    @classmethod
    def coerce(cls, value: Any, stage: Optional[str] = None) -> "Output":
        if isinstance(value, Output):
            return cls(value.value, value.sensitive, value.kind, stage or value.stage, value.redacted)
        if isinstance(value, bool) or isinstance(value, (int, float)):
            kind = "number" if not isinstance(value, bool) else "bool"
        elif isinstance(value, dict):
            kind = "map"
        elif isinstance(value, (list, tuple)):
            kind = "list"
        else:
            kind = "string"
        return cls(value=value, kind=kind, stage=stage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": None if self.sensitive else self.value,
            "sensitive": self.sensitive,
            "redacted": self.sensitive or self.redacted,
            "kind": self.kind,
            "stage": self.stage,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Output":
        return cls(
            value=data.get("value"),
            sensitive=data.get("sensitive", False),
            kind=data.get("kind", "string"),
            stage=data.get("stage"),
            redacted=data.get("redacted", False),
        )

    def __repr__(self) -> str:
        shown = "***" if self.sensitive else repr(self.value)
        return f"Output({shown}, kind={self.kind}, stage={self.stage})"


StageAction = Callable[["StageContext"], Optional[Mapping[str, Any]]]


@dataclass(frozen=True)
class Stage:
    """A named unit of orchestration work."""

    name: str
    action: StageAction
    depends_on: Tuple[str, ...] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    idempotent: bool = True
    compensate: Optional[Callable[["StageContext"], None]] = None
    # 非幂等阶段重入前调用：返回非 None 表示效果已存在，直接记为成功
    precondition: Optional[StageAction] = None
    # 恢复运行时重新获取被脱敏的输出
    refresh: Optional[StageAction] = None
    best_effort: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "depends_on", tuple(self.depends_on))


class DeploymentPlan:
    """Ordered, dependency-annotated stages; immutable after construction."""

    def __init__(self, stages: Sequence[Stage], name: str = "deployment") -> None:
        self.name = name
        self._stages: Tuple[Stage, ...] = tuple(stages)
        self._by_name: Dict[str, Stage] = {}
        for stage in self._stages:
            if stage.name in self._by_name:
                raise PlanValidationError(f"Duplicate stage name: {stage.name}")
            self._by_name[stage.name] = stage
        for stage in self._stages:
            for dep in stage.depends_on:
                if dep not in self._by_name:
                    raise PlanValidationError(f"Stage '{stage.name}' depends on unknown stage '{dep}'")
                if dep == stage.name:
                    raise PlanValidationError(f"Stage '{stage.name}' depends on itself")
        self._order = self._topological_order()

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    def __getitem__(self, name: str) -> Stage:
        return self._by_name[name]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._stages)

    def topological_order(self) -> List[Stage]:
        return list(self._order)

    def downstream(self, name: str) -> List[str]:
        """`name` and every stage depending on it transitively, in run order."""
        affected = {name}
        for stage in self._order:
            if affected.intersection(stage.depends_on):
                affected.add(stage.name)
        return [stage.name for stage in self._order if stage.name in affected]

    def _topological_order(self) -> List[Stage]:
        # Kahn 算法；同层按声明顺序打破平局，保证结果确定
        index = {stage.name: i for i, stage in enumerate(self._stages)}
        indegree = {stage.name: len(set(stage.depends_on)) for stage in self._stages}
        dependents: Dict[str, List[str]] = {stage.name: [] for stage in self._stages}
        for stage in self._stages:
            for dep in set(stage.depends_on):
                dependents[dep].append(stage.name)

        ready = [index[name] for name, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order: List[Stage] = []
        while ready:
            stage = self._stages[heapq.heappop(ready)]
            order.append(stage)
            for child in dependents[stage.name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, index[child])

        if len(order) != len(self._stages):
            cyclic = sorted(
                (name for name, degree in indegree.items() if degree > 0), key=index.get
            )
            raise PlanValidationError(f"Dependency cycle among stages: {', '.join(cyclic)}")
        return order


@dataclass
class StageResult:
    """阶段执行记录"""
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    delays: List[float] = field(default_factory=list)
    history: List[Dict[str, Any]] = field(default_factory=list)
    output_keys: List[str] = field(default_factory=list)
    partial: bool = False
    completion_index: Optional[int] = None
    deferred_reason: Optional[str] = None
    rollback_error: Optional[str] = None
    compensated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "delays": list(self.delays),
            "history": list(self.history),
            "output_keys": list(self.output_keys),
            "partial": self.partial,
            "completion_index": self.completion_index,
            "deferred_reason": self.deferred_reason,
            "rollback_error": self.rollback_error,
            "compensated": self.compensated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        kind = data.get("error_kind")
        return cls(
            status=StageStatus(data.get("status", "pending")),
            attempts=data.get("attempts", 0),
            last_error=data.get("last_error"),
            error_kind=ErrorKind(kind) if kind else None,
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            delays=list(data.get("delays", [])),
            history=list(data.get("history", [])),
            output_keys=list(data.get("output_keys", [])),
            partial=data.get("partial", False),
            completion_index=data.get("completion_index"),
            deferred_reason=data.get("deferred_reason"),
            rollback_error=data.get("rollback_error"),
            compensated=data.get("compensated", False),
        )


@dataclass
class DeploymentState:
    """Persisted record of one run: stage outcomes plus produced outputs."""

    run_id: str
    status: RunStatus = RunStatus.RUNNING
    results: Dict[str, StageResult] = field(default_factory=dict)
    outputs: Dict[str, Output] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    failed_stage: Optional[str] = None
    completions: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def result(self, name: str) -> StageResult:
        if name not in self.results:
            self.results[name] = StageResult()
        return self.results[name]

    def output_values(self) -> Dict[str, Any]:
        return {key: output.value for key, output in self.outputs.items()}

    def record_outputs(self, stage: str, values: Mapping[str, Any]) -> List[str]:
        """Store outputs produced by `stage`; keys owned by another stage are refused."""
        coerced = {key: Output.coerce(value, stage) for key, value in values.items()}
        for key in coerced:
            existing = self.outputs.get(key)
            if existing is not None and existing.stage not in (None, stage):
                raise StageError(
                    f"Output '{key}' already produced by stage '{existing.stage}'",
                    kind=ErrorKind.FATAL,
                )
        self.outputs.update(coerced)
        return list(coerced)

    def redacted_keys(self, stage: str) -> List[str]:
        return [
            key for key, output in self.outputs.items()
            if output.stage == stage and output.redacted
        ]

    def failure_summary(self) -> Optional[str]:
        if not self.failed_stage:
            return None
        result = self.results.get(self.failed_stage)
        if result is None:
            return f"Stage '{self.failed_stage}' failed"
        kind = f" [{result.error_kind.value}]" if result.error_kind else ""
        return (
            f"Stage '{self.failed_stage}' failed after {result.attempts} attempt(s){kind}: "
            f"{result.last_error}"
        )

    def deferred_stages(self) -> Dict[str, str]:
        return {
            name: result.deferred_reason
            for name, result in self.results.items()
            if result.status == StageStatus.PENDING and result.deferred_reason
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": "1.0",
            "run_id": self.run_id,
            "status": self.status.value,
            "failed_stage": self.failed_stage,
            "completions": self.completions,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": dict(self.metadata),
            "stages": {name: result.to_dict() for name, result in self.results.items()},
            "outputs": {key: output.to_dict() for key, output in self.outputs.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentState":
        return cls(
            run_id=data["run_id"],
            status=RunStatus(data.get("status", "running")),
            results={
                name: StageResult.from_dict(payload)
                for name, payload in (data.get("stages") or {}).items()
            },
            outputs={
                key: Output.from_dict(payload)
                for key, payload in (data.get("outputs") or {}).items()
            },
            metadata=dict(data.get("metadata") or {}),
            failed_stage=data.get("failed_stage"),
            completions=data.get("completions", 0),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


class StageContext:
    """Read-only view of a run handed to stage actions.

    Each attempt gets its own abort event. The runner sets it when the run is
    cancelled or the attempt's deadline passes; long-running actions should
    check `cancelled` or sleep through `wait()` so they stop promptly.
    """

    def __init__(
        self,
        run_id: str,
        stage: str,
        attempt: int,
        outputs: Mapping[str, Any],
        abort_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.run_id = run_id
        self.stage = stage
        self.attempt = attempt
        self.outputs: Mapping[str, Any] = MappingProxyType(dict(outputs))
        self.metadata: Mapping[str, Any] = MappingProxyType(dict(metadata or {}))
        self._abort_event = abort_event or threading.Event()
        self.deadline = deadline

    @property
    def cancelled(self) -> bool:
        return self._abort_event.is_set()

    def abort(self) -> None:
        self._abort_event.set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True as soon as the attempt is aborted."""
        return self._abort_event.wait(seconds)

    def remaining(self, default: Optional[float] = None) -> Optional[float]:
        """Seconds left before the deadline, capped by `default` when given."""
        if self.deadline is None:
            return default
        left = max(self.deadline - time.monotonic(), 0.0)
        return left if default is None else min(left, default)

    def get(self, key: str, default: Any = None) -> Any:
        value = self.outputs.get(key)
        return default if value is None else value

    def require(self, key: str) -> Any:
        value = self.outputs.get(key)
        if value is None:
            raise StageError(
                f"Stage '{self.stage}' needs output '{key}' which is missing",
                kind=ErrorKind.FATAL,
            )
        return value
