"""Terraform-backed infrastructure provisioning."""

from __future__ import annotations

import json
import logging
import re
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import ErrorKind, ProvisionError
from ..orchestrator.models import Output

logger = logging.getLogger(__name__)

_AUTH_PATTERNS = re.compile(
    r"(could not find default credentials|invalid_grant|unauthenticated|"
    r"permission denied|error 403|forbidden|authentication failed|"
    r"no valid credential sources|accessdenied)",
    re.IGNORECASE,
)
_TRANSIENT_PATTERNS = re.compile(
    r"(ratelimitexceeded|rate limit|quota exceeded|too many requests|error 429|"
    r"error 50[234]|service unavailable|timeout|timed out|connection reset|"
    r"tls handshake|i/o timeout|error acquiring the state lock)",
    re.IGNORECASE,
)
_NO_CHANGES = "No changes."


@dataclass
class InfraPlan:
    """An infrastructure plan: a Terraform working directory plus variables."""

    name: str
    working_dir: Path
    variables: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.working_dir = Path(self.working_dir)


@dataclass
class CommandOutcome:
    args: List[str]
    exit_code: int
    stdout: str
    stderr: str


Runner = Callable[..., subprocess.CompletedProcess]


class TerraformProvisioner:
    """Wraps the `terraform` CLI to apply, query and destroy a plan.

    The plan's resources are opaque; only the output map is read back.
    """

    def __init__(
        self,
        binary: str = "terraform",
        *,
        runner: Optional[Runner] = None,
        apply_timeout: float = 1800.0,
    ) -> None:
        self.binary = binary
        self._runner = runner or subprocess.run
        self.apply_timeout = apply_timeout

    def apply(self, plan: InfraPlan, timeout: Optional[float] = None) -> Dict[str, Output]:
        """Create or update resources; "no changes" counts as success.

        `timeout` caps the whole call below `apply_timeout`.
        """
        budget = self.apply_timeout if timeout is None else min(self.apply_timeout, timeout)
        started = time.monotonic()
        self._write_variables(plan)
        self._run(plan, ["init", "-input=false", "-no-color"], stage="init", timeout=budget)

        logger.info("🏗️  Applying infrastructure plan %s (this may take several minutes)", plan.name)
        outcome = self._exec(
            plan,
            ["apply", "-auto-approve", "-input=false", "-no-color"],
            timeout=max(budget - (time.monotonic() - started), 1.0),
        )
        if outcome.exit_code != 0:
            kind = self._classify(outcome.stderr)
            partial: Dict[str, Output] = {}
            if kind != ErrorKind.FATAL:
                # 部分资源可能已经创建，尽量取回输出以便回滚
                partial = self._try_outputs(plan)
            raise ProvisionError(
                f"terraform apply failed: {self._tail(outcome.stderr)}",
                kind=kind,
                partial_outputs=partial,
            )

        if _NO_CHANGES in outcome.stdout:
            logger.info("   Infrastructure already up to date")
        return self.outputs(plan)

    def outputs(self, plan: InfraPlan) -> Dict[str, Output]:
        """Read the plan's output map, keeping Terraform's sensitivity flags."""
        outcome = self._run(plan, ["output", "-json", "-no-color"], stage="output")
        try:
            payload = json.loads(outcome.stdout or "{}")
        except ValueError as exc:
            raise ProvisionError(f"Unreadable terraform output: {exc}", kind=ErrorKind.FATAL) from exc

        outputs: Dict[str, Output] = {}
        for key, entry in payload.items():
            kind = entry.get("type", "string")
            if isinstance(kind, list):
                kind = kind[0]
            outputs[key] = Output(
                value=entry.get("value"),
                sensitive=bool(entry.get("sensitive", False)),
                kind=str(kind),
            )
        return outputs

    def destroy(self, plan: InfraPlan) -> None:
        logger.warning("🧨 Destroying infrastructure plan %s", plan.name)
        self._write_variables(plan)
        self._run(
            plan,
            ["destroy", "-auto-approve", "-input=false", "-no-color"],
            stage="destroy",
            timeout=self.apply_timeout,
        )

    # ------------------------------------------------------------------ helpers

    def _try_outputs(self, plan: InfraPlan) -> Dict[str, Output]:
        try:
            return self.outputs(plan)
        except ProvisionError as exc:
            logger.warning("   Could not read outputs after failed apply: %s", exc)
            return {}

    def _write_variables(self, plan: InfraPlan) -> None:
        if not plan.working_dir.is_dir():
            raise ProvisionError(
                f"Infrastructure plan directory not found: {plan.working_dir}",
                kind=ErrorKind.FATAL,
            )
        path = plan.working_dir / "terraform.tfvars.json"
        path.write_text(json.dumps(plan.variables, indent=2), encoding="utf-8")

    def _run(
        self,
        plan: InfraPlan,
        args: List[str],
        *,
        stage: str,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        outcome = self._exec(plan, args, timeout=timeout)
        if outcome.exit_code != 0:
            raise ProvisionError(
                f"terraform {stage} failed: {self._tail(outcome.stderr)}",
                kind=self._classify(outcome.stderr),
            )
        return outcome

    def _exec(self, plan: InfraPlan, args: List[str], *, timeout: Optional[float] = None) -> CommandOutcome:
        command = [self.binary] + args
        logger.debug("$ %s (cwd=%s)", " ".join(command), plan.working_dir)
        try:
            process = self._runner(
                command,
                cwd=str(plan.working_dir),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise ProvisionError(f"{self.binary} binary not found", kind=ErrorKind.FATAL) from exc
        except subprocess.TimeoutExpired as exc:
            raise ProvisionError(
                f"terraform {args[0]} timed out after {timeout:.0f}s",
                kind=ErrorKind.TRANSIENT,
            ) from exc
        return CommandOutcome(command, process.returncode, process.stdout or "", process.stderr or "")

    @staticmethod
    def _classify(stderr: str) -> ErrorKind:
        if _AUTH_PATTERNS.search(stderr):
            return ErrorKind.FATAL
        if _TRANSIENT_PATTERNS.search(stderr):
            return ErrorKind.TRANSIENT
        return ErrorKind.PARTIAL

    @staticmethod
    def _tail(text: str, limit: int = 800) -> str:
        text = text.strip()
        return text if len(text) <= limit else "..." + text[-limit:]
