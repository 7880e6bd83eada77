"""Stage runner: dependency-ordered execution with retry, persistence and rollback."""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from ..errors import ErrorKind, StageDeferred, StageError
from .models import (
    DeploymentPlan,
    DeploymentState,
    RunStatus,
    Stage,
    StageContext,
    StageResult,
    StageStatus,
    utc_now,
)
from .state_store import StateStore

logger = logging.getLogger(__name__)

# 取消信号的轮询间隔
_CANCEL_POLL_INTERVAL = 0.05


class StageRunner:
    """
    部署阶段运行器

    Executes every stage of a `DeploymentPlan` whose dependencies have
    succeeded, in topological order, dispatching independent stages onto a
    bounded worker pool. All state mutation goes through one lock and is
    persisted before the next dispatch.
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        *,
        max_workers: int = 4,
        sleep: Optional[Callable[[float], Any]] = None,
        rng: Callable[[], float] = random.random,
        abort_grace: float = 30.0,
    ) -> None:
        self.store = store
        self.max_workers = max(1, max_workers)
        self.abort_grace = abort_grace
        self._rng = rng
        self._cancel = threading.Event()
        self._live: Set[StageContext] = set()
        self._sleep = sleep or self._cancel.wait
        self._lock = threading.RLock()
        self._reentered: Set[str] = set()
        self._deferred: Set[str] = set()

    # ------------------------------------------------------------------ control

    def cancel(self) -> None:
        """Abort the run: no new dispatch, in-flight failures are not retried."""
        if not self._cancel.is_set():
            logger.warning("🛑 Cancellation requested, rolling back after in-flight stages stop")
        self._cancel.set()
        with self._lock:
            for ctx in self._live:
                ctx.abort()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---------------------------------------------------------------------- run

    def run(
        self,
        plan: DeploymentPlan,
        state: Optional[DeploymentState] = None,
        *,
        force: Iterable[str] = (),
        run_id: Optional[str] = None,
    ) -> DeploymentState:
        """
        执行部署计划

        Args:
            plan: validated plan; its stages are never modified
            state: prior state to resume from, or None for a fresh run
            force: stage names to re-run even if they already succeeded
            run_id: id for a fresh run (defaults to the plan name)

        Returns:
            DeploymentState: the terminal state of the run
        """
        order = plan.topological_order()
        forced = set(force)
        unknown = forced.difference(stage.name for stage in plan.stages)
        if unknown:
            raise ValueError(f"Cannot force unknown stage(s): {', '.join(sorted(unknown))}")

        state = state or DeploymentState(run_id=run_id or plan.name)
        self._reentered = set()
        self._deferred = set()

        with self._lock:
            self._prepare(plan, state, forced)
            state.status = RunStatus.RUNNING
            self._persist(state)

        logger.info("")
        logger.info("=" * 60)
        logger.info("🚀 DEPLOYMENT RUN %s", state.run_id)
        logger.info("=" * 60)
        for i, stage in enumerate(order, 1):
            result = state.results[stage.name]
            marker = "✓" if result.status == StageStatus.SUCCEEDED else " "
            deps = f" (after {', '.join(stage.depends_on)})" if stage.depends_on else ""
            logger.info("  %s %d. %s%s", marker, i, stage.name, deps)
        logger.info("=" * 60)

        if any(state.results[s.name].status != StageStatus.SUCCEEDED for s in order):
            self._rehydrate(plan, state)

        halted = False
        in_flight: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="stage") as pool:
            while True:
                if not halted and not self.cancelled:
                    for stage in self._eligible(plan, order, state, set(in_flight.values())):
                        if len(in_flight) >= self.max_workers:
                            break
                        with self._lock:
                            result = state.results[stage.name]
                            result.status = StageStatus.RUNNING
                            result.started_at = utc_now()
                            result.finished_at = None
                            self._persist(state)
                        logger.info("📍 Stage %s started", stage.name)
                        in_flight[pool.submit(self._execute, plan, stage, state)] = stage.name

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    name = in_flight.pop(future)
                    status = future.result()
                    if status == StageStatus.FAILED and not plan[name].best_effort:
                        halted = True
                        with self._lock:
                            if state.failed_stage is None:
                                state.failed_stage = name
                                self._persist(state)

        return self._finish(plan, state, halted)

    # ------------------------------------------------------------ bookkeeping

    def _prepare(self, plan: DeploymentPlan, state: DeploymentState, forced: Set[str]) -> None:
        """Normalize prior state so resume starts from the last consistent point."""
        state.failed_stage = None
        for stage in plan.stages:
            result = state.result(stage.name)
            previous = result.status
            if stage.name in forced:
                self._reset(result)
            elif previous in (StageStatus.RUNNING, StageStatus.FAILED):
                # 上次运行崩溃或失败：结果未知，非幂等阶段需要前置检查
                if previous == StageStatus.RUNNING or result.attempts > 0:
                    self._reentered.add(stage.name)
                self._reset(result)
            elif previous in (StageStatus.ROLLED_BACK, StageStatus.PENDING):
                self._reset(result)
            if previous != StageStatus.PENDING and result.status == StageStatus.PENDING:
                logger.debug("   %s: %s -> pending for this run", stage.name, previous.value)

    @staticmethod
    def _reset(result: StageResult) -> None:
        # 已补偿的部分输出不再需要回滚；未补偿的保留
        result.partial = result.partial and not result.compensated
        result.status = StageStatus.PENDING
        result.attempts = 0
        result.delays = []
        result.deferred_reason = None
        result.rollback_error = None
        result.compensated = False
        result.completion_index = None

    def _rehydrate(self, plan: DeploymentPlan, state: DeploymentState) -> None:
        """Recover sensitive outputs that were redacted when state was persisted."""
        for stage in plan.topological_order():
            result = state.results[stage.name]
            if result.status != StageStatus.SUCCEEDED:
                continue
            missing = state.redacted_keys(stage.name)
            if not missing:
                continue
            if stage.refresh is None:
                logger.warning(
                    "   ⚠️ %s has redacted outputs (%s) and no refresh hook",
                    stage.name, ", ".join(missing),
                )
                continue
            try:
                values = stage.refresh(self._context(state, stage, result.attempts)) or {}
            except Exception as exc:
                logger.warning("   ⚠️ Could not refresh outputs of %s: %s", stage.name, exc)
                continue
            with self._lock:
                for key in missing:
                    if key in values:
                        output = state.outputs[key]
                        raw = values[key]
                        output.value = getattr(raw, "value", raw)
                        output.redacted = False
            logger.info("   🔑 Refreshed %d redacted output(s) of %s", len(missing), stage.name)

    def _eligible(
        self,
        plan: DeploymentPlan,
        order: List[Stage],
        state: DeploymentState,
        in_flight: Set[str],
    ) -> List[Stage]:
        with self._lock:
            return [
                stage for stage in order
                if stage.name not in in_flight
                and stage.name not in self._deferred
                and state.results[stage.name].status == StageStatus.PENDING
                and self._dependencies_met(plan, state, stage)
            ]

    @staticmethod
    def _dependencies_met(plan: DeploymentPlan, state: DeploymentState, stage: Stage) -> bool:
        for dep in stage.depends_on:
            status = state.results[dep].status
            if status == StageStatus.SUCCEEDED:
                continue
            # 尽力而为阶段失败不阻塞下游
            if status == StageStatus.FAILED and plan[dep].best_effort:
                continue
            return False
        return True

    def _context(self, state: DeploymentState, stage: Stage, attempt: int) -> StageContext:
        with self._lock:
            deadline = None
            if stage.retry.timeout:
                deadline = time.monotonic() + stage.retry.timeout
            return StageContext(
                run_id=state.run_id,
                stage=stage.name,
                attempt=attempt,
                outputs=state.output_values(),
                abort_event=threading.Event(),
                deadline=deadline,
                metadata=state.metadata,
            )

    def _persist(self, state: DeploymentState) -> None:
        state.updated_at = utc_now()
        if self.store is not None:
            self.store.save(state)

    # -------------------------------------------------------------- execution

    def _execute(self, plan: DeploymentPlan, stage: Stage, state: DeploymentState) -> StageStatus:
        """Attempt loop for one stage; runs on a worker thread and never raises."""
        policy = stage.retry
        while True:
            with self._lock:
                result = state.results[stage.name]
                result.attempts += 1
                attempt = result.attempts
                self._persist(state)

            ctx = self._context(state, stage, attempt)
            try:
                outputs = self._attempt(stage, ctx, reentry=attempt > 1 or stage.name in self._reentered)
                with self._lock:
                    self._succeed(state, stage, outputs or {})
                return StageStatus.SUCCEEDED
            except StageDeferred as exc:
                with self._lock:
                    self._defer(state, stage, exc.reason)
                return StageStatus.PENDING
            except Exception as exc:
                error = self._classify(exc)

            with self._lock:
                result = state.results[stage.name]
                if error.partial_outputs:
                    try:
                        keys = state.record_outputs(stage.name, error.partial_outputs)
                        result.output_keys = sorted(set(result.output_keys) | set(keys))
                        result.partial = True
                    except StageError as conflict:
                        logger.error("   Discarding partial outputs of %s: %s", stage.name, conflict)
                result.last_error = error.message
                result.error_kind = error.kind
                result.history.append({
                    "attempt": attempt,
                    "kind": error.kind.value,
                    "error": error.message,
                    "at": utc_now(),
                })

                exhausted = attempt >= policy.max_attempts
                if exhausted or not error.kind.retryable:
                    self._fail(state, stage, error)
                    return StageStatus.FAILED

                delay = policy.delay_for(attempt, self._rng)
                result.delays.append(delay)
                self._persist(state)

            logger.warning(
                "   ⚠️ %s attempt %d/%d failed (%s): %s; retrying in %.1fs",
                stage.name, attempt, policy.max_attempts, error.kind.value, error.message, delay,
            )
            self._sleep(delay)
            if self.cancelled:
                with self._lock:
                    self._fail(state, stage, StageError("Run cancelled by operator", kind=ErrorKind.CANCELLED))
                return StageStatus.FAILED

    def _attempt(self, stage: Stage, ctx: StageContext, *, reentry: bool) -> Optional[Mapping[str, Any]]:
        if self.cancelled:
            raise StageError("Run cancelled by operator", kind=ErrorKind.CANCELLED)
        if reentry and not stage.idempotent:
            if stage.precondition is None:
                raise StageError(
                    f"Stage '{stage.name}' is not idempotent and declares no precondition check; "
                    "verify the target manually and re-run with --force",
                    kind=ErrorKind.FATAL,
                )
            existing = self._call(stage.precondition, ctx, stage.retry.timeout)
            if existing is not None:
                logger.info("   ↪ %s already applied, skipping action", stage.name)
                return existing
        return self._call(stage.action, ctx, stage.retry.timeout)

    def _call(
        self,
        fn: Callable[[StageContext], Any],
        ctx: StageContext,
        timeout: Optional[float],
    ) -> Any:
        """Run `fn` on a helper thread, honouring the hard deadline and cancellation.

        On expiry or cancellation the attempt's abort event is set and the
        helper is joined for up to `abort_grace` seconds, so a retry or a
        rollback never overlaps the abandoned attempt.
        """
        box: Dict[str, Any] = {}
        done = threading.Event()

        def target() -> None:
            try:
                box["value"] = fn(ctx)
            except BaseException as exc:  # noqa: B902 - re-raised on the caller's thread
                box["error"] = exc
            finally:
                done.set()

        with self._lock:
            self._live.add(ctx)
            if self.cancelled:
                ctx.abort()
        worker = threading.Thread(target=target, name=f"action-{ctx.stage}", daemon=True)
        worker.start()
        try:
            while not done.wait(_CANCEL_POLL_INTERVAL):
                if self.cancelled:
                    self._stop(ctx, worker)
                    raise StageError("Run cancelled by operator", kind=ErrorKind.CANCELLED)
                if ctx.deadline is not None and time.monotonic() >= ctx.deadline:
                    message = f"Stage '{ctx.stage}' exceeded its {timeout:g}s deadline"
                    if not self._stop(ctx, worker):
                        # 动作仍在运行：不能重试，否则会与之重叠
                        raise StageError(
                            f"{message} and did not stop within {self.abort_grace:g}s",
                            kind=ErrorKind.FATAL,
                        )
                    raise StageError(message, kind=ErrorKind.TIMEOUT)
        finally:
            with self._lock:
                self._live.discard(ctx)
        if "error" in box:
            raise box["error"]
        return box.get("value")

    def _stop(self, ctx: StageContext, worker: threading.Thread) -> bool:
        ctx.abort()
        worker.join(self.abort_grace)
        if worker.is_alive():
            logger.error(
                "   ❌ %s attempt %d still running %.0fs after abort",
                ctx.stage, ctx.attempt, self.abort_grace,
            )
            return False
        return True

    def _classify(self, exc: Exception) -> StageError:
        if isinstance(exc, StageError):
            error = exc
        else:
            # 未分类的异常按瞬时错误处理
            error = StageError(f"{type(exc).__name__}: {exc}", kind=ErrorKind.TRANSIENT)
        if self.cancelled and error.kind != ErrorKind.CANCELLED:
            error = StageError(
                f"Run cancelled by operator ({error.message})",
                kind=ErrorKind.CANCELLED,
                partial_outputs=error.partial_outputs,
            )
        return error

    def _succeed(self, state: DeploymentState, stage: Stage, outputs: Mapping[str, Any]) -> None:
        result = state.results[stage.name]
        keys = state.record_outputs(stage.name, outputs)
        state.completions += 1
        result.status = StageStatus.SUCCEEDED
        result.output_keys = sorted(set(result.output_keys) | set(keys))
        result.completion_index = state.completions
        result.finished_at = utc_now()
        result.last_error = None
        result.error_kind = None
        result.partial = False
        self._persist(state)
        logger.info("   ✅ %s succeeded (attempt %d)", stage.name, result.attempts)

    def _fail(self, state: DeploymentState, stage: Stage, error: StageError) -> None:
        result = state.results[stage.name]
        result.status = StageStatus.FAILED
        result.last_error = error.message
        result.error_kind = error.kind
        result.finished_at = utc_now()
        self._persist(state)
        if stage.best_effort:
            logger.warning(
                "   ⚠️ Best-effort stage %s failed after %d attempt(s): %s",
                stage.name, result.attempts, error.message,
            )
        else:
            logger.error(
                "   ❌ %s failed after %d attempt(s) [%s]: %s",
                stage.name, result.attempts, error.kind.value, error.message,
            )

    def _defer(self, state: DeploymentState, stage: Stage, reason: str) -> None:
        result = state.results[stage.name]
        result.status = StageStatus.PENDING
        result.deferred_reason = reason
        result.finished_at = utc_now()
        self._deferred.add(stage.name)
        self._persist(state)
        logger.warning("   ⏸️ %s deferred: %s", stage.name, reason)

    # --------------------------------------------------------------- terminal

    def _finish(self, plan: DeploymentPlan, state: DeploymentState, halted: bool) -> DeploymentState:
        if self.cancelled or halted:
            self._rollback(plan, state)
            status = RunStatus.CANCELLED if self.cancelled else RunStatus.FAILED
        elif self._deferred:
            status = RunStatus.HALTED
        elif all(
            state.results[stage.name].status == StageStatus.SUCCEEDED
            for stage in plan.stages if not stage.best_effort
        ):
            status = RunStatus.SUCCEEDED
        else:
            status = RunStatus.HALTED

        with self._lock:
            state.status = status
            self._persist(state)

        logger.info("=" * 60)
        if status == RunStatus.SUCCEEDED:
            logger.info("🎉 Run %s completed successfully", state.run_id)
        elif status == RunStatus.HALTED:
            for name, reason in state.deferred_stages().items():
                logger.warning("⏸️ Run %s halted at %s: %s", state.run_id, name, reason)
        else:
            logger.error("💥 Run %s %s: %s", state.run_id, status.value,
                         state.failure_summary() or "aborted by operator")
        logger.info("=" * 60)
        return state

    def _rollback(self, plan: DeploymentPlan, state: DeploymentState) -> None:
        """Unwind completed stages in reverse completion order (best effort)."""
        with self._lock:
            partial = [
                plan[name] for name, result in state.results.items()
                if name in plan
                and result.status == StageStatus.FAILED
                and result.partial
                and plan[name].compensate is not None
            ]
            completed = sorted(
                (
                    plan[name] for name, result in state.results.items()
                    if name in plan
                    and result.status == StageStatus.SUCCEEDED
                    and plan[name].compensate is not None
                ),
                key=lambda stage: state.results[stage.name].completion_index or 0,
                reverse=True,
            )

        targets = partial + completed
        if not targets:
            logger.info("↩️  Nothing to roll back")
            return

        logger.warning("↩️  Rolling back %d stage(s): %s", len(targets), ", ".join(s.name for s in targets))
        for stage in targets:
            result = state.results[stage.name]
            ctx = self._context(state, stage, result.attempts)
            try:
                stage.compensate(ctx)  # type: ignore[misc]
            except Exception as exc:
                with self._lock:
                    result.rollback_error = f"{type(exc).__name__}: {exc}"
                    if result.status == StageStatus.SUCCEEDED:
                        # 补偿失败：资源状态未知，恢复运行时需重新执行
                        result.status = StageStatus.FAILED
                        result.last_error = f"rollback failed: {exc}"
                    self._persist(state)
                logger.error("   ❌ Rollback of %s failed: %s", stage.name, exc)
                continue
            with self._lock:
                result.compensated = True
                if result.status == StageStatus.SUCCEEDED:
                    result.status = StageStatus.ROLLED_BACK
                self._persist(state)
            logger.info("   ↩️  %s rolled back", stage.name)
