"""Post-deployment verification and snapshot."""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..errors import ErrorKind, StageError
from ..health import HealthCheckSpec, HealthProber
from ..ssh import RemoteExecutor, SSHCredentials

logger = logging.getLogger(__name__)


def _stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


@dataclass
class CheckOutcome:
    name: str
    passed: bool
    detail: str = ""


@dataclass
class VerificationReport:
    checks: List[CheckOutcome] = field(default_factory=list)
    snapshot: Optional[str] = None
    snapshot_error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    def failures(self) -> List[CheckOutcome]:
        return [check for check in self.checks if not check.passed]

    def to_outputs(self) -> Dict[str, Any]:
        return {
            "verification_checks": {check.name: check.passed for check in self.checks},
            "snapshot_uri": self.snapshot,
            "snapshot_error": self.snapshot_error,
        }


class VerificationStage:
    """Runs the fixed post-deploy checklist and, on success, a database snapshot.

    Checklist: compose services running, database reachable from the host,
    smoke HTTP request against the public endpoint. A snapshot failure only
    produces a warning.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        prober: HealthProber,
        *,
        services: Sequence[str],
        database_check: str,
        remote_dir: str = "~/docker-compose",
        snapshot_enabled: bool = True,
        smoke_deadline: float = 30.0,
        request_timeout: float = 10.0,
        snapshot_timeout: float = 1800.0,
    ) -> None:
        self.executor = executor
        self.prober = prober
        self.services = list(services)
        self.database_check = database_check
        self.remote_dir = remote_dir
        self.snapshot_enabled = snapshot_enabled
        self.smoke_deadline = smoke_deadline
        self.request_timeout = request_timeout
        self.snapshot_timeout = snapshot_timeout

    def _in_dir(self, command: str) -> str:
        return f"cd {self.remote_dir} && {command}"

    def check_services(self, host: SSHCredentials) -> CheckOutcome:
        result = self.executor.run(
            host, self._in_dir("docker compose ps --status running --services")
        )
        if not result.ok:
            return CheckOutcome("services", False, result.stderr.strip() or f"exit {result.exit_status}")
        running = {line.strip() for line in result.stdout.splitlines() if line.strip()}
        missing = [name for name in self.services if name not in running]
        if missing:
            return CheckOutcome("services", False, f"not running: {', '.join(missing)}")
        return CheckOutcome("services", True, f"{len(running)} running")

    def check_database(self, host: SSHCredentials) -> CheckOutcome:
        result = self.executor.run(host, self._in_dir(self.database_check))
        detail = "reachable" if result.ok else (result.stderr.strip() or f"exit {result.exit_status}")
        return CheckOutcome("database", result.ok, detail)

    def check_smoke(self, url: str, verify_tls: bool = True) -> CheckOutcome:
        spec = HealthCheckSpec.http(
            url,
            name="smoke",
            interval=5.0,
            deadline=self.smoke_deadline,
            request_timeout=self.request_timeout,
            failure_threshold=3,
            verify_tls=verify_tls,
        )
        result = self.prober.wait_for(spec)
        return CheckOutcome("smoke_http", result.ok, result.describe())

    def snapshot(self, host: SSHCredentials, bucket: str, label: str = "database") -> str:
        """Dump the database on the host and copy it to the storage bucket."""
        stamp = _stamp()
        dump = f"/tmp/cloud-deployer-{stamp}.sql.gz"
        target = f"gs://{bucket}/backups/{label}-{stamp}.sql.gz"
        command = self._in_dir(
            "set -o pipefail; "
            "docker compose exec -T api sh -c "
            + shlex.quote('PGPASSWORD="$DB_PASSWORD" pg_dump -h "$DB_HOST" -U "$DB_USERNAME" -d "$DB_DATABASE"')
            + f" | gzip > {dump} && gsutil -q cp {dump} {shlex.quote(target)}; "
            f"status=$?; rm -f {dump}; exit $status"
        )
        self.executor.check(host, f"bash -c {shlex.quote(command)}", timeout=self.snapshot_timeout)
        return target

    def archive_config(self, host: SSHCredentials, label: str) -> str:
        """Archive the workload descriptor and proxy config under `backups/` on the host."""
        archive = f"backups/{label}-{_stamp()}.tar.gz"
        self.executor.check(host, self._in_dir(
            f"mkdir -p backups && tar -czf {archive} .env docker-compose.yml nginx/conf.d"
        ))
        return f"{self.remote_dir}/{archive}"

    def run(
        self,
        host: SSHCredentials,
        base_url: str,
        *,
        bucket: Optional[str] = None,
        verify_tls: bool = True,
    ) -> VerificationReport:
        report = VerificationReport()
        report.checks.append(self.check_services(host))
        report.checks.append(self.check_database(host))
        report.checks.append(self.check_smoke(f"{base_url.rstrip('/')}/health", verify_tls))

        for check in report.checks:
            marker = "✅" if check.passed else "❌"
            logger.info("   %s %s: %s", marker, check.name, check.detail)

        if not report.passed:
            failed = "; ".join(f"{c.name} ({c.detail})" for c in report.failures())
            raise StageError(f"Verification failed: {failed}", kind=ErrorKind.VERIFICATION)

        if self.snapshot_enabled and bucket:
            try:
                report.snapshot = self.snapshot(host, bucket)
                logger.info("💾 Snapshot stored at %s", report.snapshot)
            except StageError as exc:
                report.snapshot_error = exc.message
                logger.warning("⚠️  Snapshot failed (deployment is still healthy): %s", exc.message)
        return report
