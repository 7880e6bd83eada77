"""Local Google Cloud account checks run before provisioning."""

from __future__ import annotations

import logging
import subprocess
from typing import Callable, List, Optional

from ..errors import ErrorKind, StageError

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


class GcloudPreflight:
    """Confirms the local gcloud login can deploy into a project.

    Every check runs; the problems are reported together so the operator can
    fix them in one go. Any problem is fatal, retrying cannot log anyone in.
    """

    def __init__(
        self,
        binary: str = "gcloud",
        *,
        runner: Optional[Runner] = None,
        timeout: float = 60.0,
    ) -> None:
        self.binary = binary
        self._runner = runner or subprocess.run
        self.timeout = timeout

    def check(self, project_id: str) -> str:
        """Run all checks for `project_id`; returns the active account."""
        problems: List[str] = []

        account = self._output(["auth", "list", "--filter=status:ACTIVE", "--format=value(account)"])
        account = account.splitlines()[0].strip() if account and account.strip() else ""
        if not account:
            problems.append("Not authenticated with Google Cloud; run `gcloud auth login`")

        if self._output(["auth", "application-default", "print-access-token"]) is None:
            problems.append(
                "Application default credentials are not set; run `gcloud auth application-default login`"
            )

        if self._output(["projects", "describe", project_id, "--format=value(projectId)"]) is None:
            problems.append(f"Cannot access project '{project_id}'; check the project id and your permissions")
        else:
            billing = self._output([
                "beta", "billing", "projects", "describe", project_id,
                "--format=value(billingAccountName)",
            ])
            if not (billing or "").strip():
                problems.append(f"Billing is not enabled for project '{project_id}'")

        if problems:
            for problem in problems:
                logger.error("   ❌ %s", problem)
            raise StageError(
                f"Found {len(problems)} cloud account issue(s): " + "; ".join(problems),
                kind=ErrorKind.FATAL,
            )
        logger.info("   ☁️  gcloud account %s can deploy to %s", account, project_id)
        return account

    def _output(self, args: List[str]) -> Optional[str]:
        """Stdout of a gcloud call, or None when it exits non-zero."""
        command = [self.binary] + args
        logger.debug("$ %s", " ".join(command))
        try:
            process = self._runner(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise StageError(f"{self.binary} binary not found", kind=ErrorKind.FATAL) from exc
        except subprocess.TimeoutExpired as exc:
            raise StageError(
                f"`{' '.join(command)}` timed out after {self.timeout:g}s",
                kind=ErrorKind.TRANSIENT,
            ) from exc
        if process.returncode != 0:
            logger.debug("   exit %s: %s", process.returncode, (process.stderr or "").strip()[:200])
            return None
        return process.stdout or ""
