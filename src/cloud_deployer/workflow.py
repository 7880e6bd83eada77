"""High-level workflow: the concrete deployment plan and how it is run."""

from __future__ import annotations

import getpass
import re
import secrets
import shutil
import signal
import socket
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .certificates import CertificateStage
from .config import AppConfig
from .errors import ErrorKind, ProvisionError, RunStateError, StageError
from .health import HealthCheckSpec, HealthProber
from .infra import GcloudPreflight, InfraPlan, TerraformProvisioner
from .interaction import UserInteractionHandler
from .orchestrator import (
    DeploymentPlan,
    DeploymentState,
    RetryPolicy,
    Stage,
    StageContext,
    StageRunner,
    StateStore,
)
from .paths import get_runs_dir
from .ssh import RemoteExecutor, RemoteProbe, SSHCredentials, SSHSession
from .templates import COMPOSE_FILE, ENV_FILE, NGINX_HTTP, TEMPLATES_DIR, render_template
from .utils.logging import get_logger
from .verification import VerificationStage

logger = get_logger(__name__)

REQUIRED_OUTPUTS = (
    "instance_external_ip",
    "db_connection_name",
    "db_password",
    "redis_host",
    "storage_bucket_name",
)

_SECRET_LINE = re.compile(r"^SECRET_KEY=(.+)$", re.MULTILINE)
_DOMAIN_PATTERN = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_UNSAFE_LABEL = re.compile(r"[^A-Za-z0-9._-]")

# 动作内部长命令的时限（秒），阶段截止时间据此推算
_DOCKER_INSTALL_TIMEOUT = 1200
_PULL_TIMEOUT = 1800
_UP_TIMEOUT = 900
_MIGRATE_TIMEOUT = 900
_SNAPSHOT_TIMEOUT = 1800
_DEADLINE_MARGIN = 300


@dataclass
class DeploymentRequest:
    """User-provided deployment request captured from the CLI."""

    project_id: str
    region: str
    zone: str
    domain: Optional[str] = None
    admin_email: Optional[str] = None
    version: str = "latest"
    run_id: Optional[str] = None          # 默认与 project_id 相同
    ssh_user: Optional[str] = None
    ssh_key: Optional[str] = None

    @property
    def effective_run_id(self) -> str:
        return self.run_id or self.project_id

    def validate(self) -> None:
        if not self.project_id or not self.region or not self.zone:
            raise ValueError("project_id, region and zone are required")
        if self.domain and not self.admin_email:
            raise ValueError("--admin-email is required when --domain is given")
        if self.domain and not _DOMAIN_PATTERN.match(self.domain):
            raise ValueError(f"Invalid domain format: {self.domain}")
        if self.admin_email and not _EMAIL_PATTERN.match(self.admin_email):
            raise ValueError(f"Invalid email format: {self.admin_email}")

    def to_metadata(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("ssh_key", None)
        return data


class DeploymentWorkflow:
    """Builds the stage plan for a request and runs it through the stage runner."""

    def __init__(
        self,
        config: AppConfig,
        interaction_handler: Optional[UserInteractionHandler] = None,
        *,
        executor: Optional[RemoteExecutor] = None,
        provisioner: Optional[TerraformProvisioner] = None,
        prober: Optional[HealthProber] = None,
        store: Optional[StateStore] = None,
        preflight: Optional[GcloudPreflight] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        resolver: Callable[[str], str] = socket.gethostbyname,
        session_factory: Optional[Callable[[SSHCredentials], SSHSession]] = None,
    ) -> None:
        self.config = config
        self.interaction_handler = interaction_handler
        self.executor = executor or RemoteExecutor(
            connect_attempts=config.ssh.connect_attempts,
            connect_delay=config.ssh.connect_delay,
            default_timeout=config.ssh.command_timeout,
            session_factory=session_factory,
        )
        self.provisioner = provisioner or TerraformProvisioner(
            config.infra.terraform_binary,
            apply_timeout=config.infra.apply_timeout,
        )
        self.prober = prober or HealthProber(executor=self.executor)
        self.store = store or StateStore(get_runs_dir(config.runner.state_dir))
        self.preflight = preflight or GcloudPreflight()
        self._which = which
        self._resolver = resolver
        self.runner: Optional[StageRunner] = None

    # ------------------------------------------------------------------ plan

    def build_plan(self, request: DeploymentRequest, *, update_from: Optional[str] = None) -> DeploymentPlan:
        """Assemble the concrete stage plan for `request`.

        With `update_from` (the version currently deployed) the plan gains a
        ``pre_update_backup`` stage that must succeed before ``configure``.
        """
        base = self.config.retry.timeout
        probe_deadline = self.config.probe.deadline + _DEADLINE_MARGIN

        stages: List[Stage] = [
            Stage(
                name="prerequisites",
                action=lambda ctx: self._check_prerequisites(request, ctx),
                retry=RetryPolicy(max_attempts=1, timeout=base),
                description="Local tooling and cloud account are ready",
            ),
            Stage(
                name="provision",
                action=lambda ctx: self._provision(request, ctx),
                depends_on=("prerequisites",),
                retry=self._retry(self.config.infra.apply_timeout + _DEADLINE_MARGIN),
                compensate=lambda ctx: self.provisioner.destroy(self._infra_plan(request)),
                refresh=lambda ctx: self.provisioner.outputs(self._infra_plan(request)),
                description="Apply the infrastructure plan",
            ),
        ]

        configure_after = ("provision",)
        if update_from:
            stages.append(Stage(
                name="pre_update_backup",
                action=lambda ctx: self._pre_update_backup(request, update_from, ctx),
                depends_on=("provision",),
                retry=self._retry(_SNAPSHOT_TIMEOUT + _DEADLINE_MARGIN),
                description=f"Back up the {update_from} deployment before updating",
            ))
            configure_after = ("provision", "pre_update_backup")

        stages.extend([
            Stage(
                name="configure",
                action=lambda ctx: self._configure(request, ctx),
                depends_on=configure_after,
                retry=self._retry(base + _DOCKER_INSTALL_TIMEOUT),
                compensate=lambda ctx: self._restore_env(request, ctx),
                description="Prepare the host and upload the workload descriptor",
            ),
            Stage(
                name="start_services",
                action=lambda ctx: self._start_services(request, ctx),
                depends_on=("configure",),
                retry=self._retry(_PULL_TIMEOUT + _UP_TIMEOUT + _DEADLINE_MARGIN),
                compensate=lambda ctx: self._stop_services(request, ctx),
                description="Pull images and start the compose project",
            ),
            Stage(
                name="wait_database",
                action=lambda ctx: self._wait_database(request, ctx),
                depends_on=("start_services",),
                retry=self._retry(probe_deadline),
                description="Database reachable through the proxy container",
            ),
            Stage(
                name="migrate",
                action=lambda ctx: self._migrate(request, ctx),
                depends_on=("wait_database",),
                retry=self._retry(_MIGRATE_TIMEOUT + _DEADLINE_MARGIN, max_attempts=2),
                best_effort=True,
                description="Apply schema migrations",
            ),
            Stage(
                name="healthcheck",
                action=lambda ctx: self._healthcheck(request, ctx),
                depends_on=("start_services", "migrate"),
                retry=self._retry(probe_deadline),
                description="Application answers over HTTP",
            ),
        ])

        verify_after = "healthcheck"
        if request.domain:
            stages.append(Stage(
                name="certificate",
                action=lambda ctx: self._certificate(request, ctx),
                depends_on=("healthcheck",),
                retry=RetryPolicy(max_attempts=1, timeout=self._certificate_deadline()),
                idempotent=False,
                precondition=lambda ctx: self._certificate_active(request, ctx),
                compensate=lambda ctx: self._certificate_stage(request, ctx).rollback(self._host(request, ctx)),
                description="Issue and activate the TLS certificate",
            ))
            verify_after = "certificate"

        stages.append(Stage(
            name="verify",
            action=lambda ctx: self._verify(request, ctx),
            depends_on=(verify_after,),
            retry=self._retry(base + _SNAPSHOT_TIMEOUT),
            description="Post-deploy checklist and snapshot",
        ))
        return DeploymentPlan(stages, name=request.effective_run_id)

    @staticmethod
    def update_stages(plan: DeploymentPlan) -> List[str]:
        """Stages re-run when the application version changes."""
        # 证书与版本无关，configure 会沿用已启用的 https 地址
        names = [name for name in plan.downstream("configure") if name != "certificate"]
        if "pre_update_backup" in plan:
            names.insert(0, "pre_update_backup")
        return names

    # ------------------------------------------------------------------- run

    def run(
        self,
        request: DeploymentRequest,
        *,
        resume: bool = False,
        force: Iterable[str] = (),
    ) -> DeploymentState:
        """Run (or resume) the deployment for `request`.

        Resuming a run with a different ``--version`` than the one recorded
        is an update: the deployment is backed up, then everything from
        ``configure`` on is re-run against the new version.
        """
        request.validate()
        run_id = request.effective_run_id
        update_from: Optional[str] = None

        if resume:
            state = self.store.load(run_id)
            previous_project = state.metadata.get("project_id")
            if previous_project and previous_project != request.project_id:
                raise RunStateError(
                    f"Run '{run_id}' belongs to project {previous_project}, not {request.project_id}"
                )
            previous_version = state.metadata.get("version")
            if previous_version and previous_version != request.version:
                update_from = previous_version
            logger.info("🔄 Resuming run %s (last status: %s)", run_id, state.status.value)
        else:
            if self.store.exists(run_id):
                raise RunStateError(
                    f"Run '{run_id}' already has persisted state; use --resume to continue it "
                    f"or `purge --run-id {run_id}` to start over"
                )
            state = DeploymentState(run_id=run_id)

        plan = self.build_plan(request, update_from=update_from)
        forced = list(force)
        if update_from:
            logger.info("⬆️  Updating %s from version %s to %s", run_id, update_from, request.version)
            forced.extend(name for name in self.update_stages(plan) if name not in forced)
            state.metadata["previous_version"] = update_from
        state.metadata.update(request.to_metadata())

        self.runner = StageRunner(self.store, max_workers=self.config.runner.max_workers)
        restore = self._install_interrupt_handler(self.runner)
        try:
            return self.runner.run(plan, state, force=forced)
        finally:
            restore()
            self.executor.close_all()

    @staticmethod
    def _install_interrupt_handler(runner: StageRunner) -> Callable[[], None]:
        """First Ctrl-C cancels the run gracefully, the second one aborts."""
        if threading.current_thread() is not threading.main_thread():
            return lambda: None

        def handle(signum, frame):  # noqa: ARG001
            if runner.cancelled:
                raise KeyboardInterrupt
            runner.cancel()

        previous = signal.getsignal(signal.SIGINT)
        signal.signal(signal.SIGINT, handle)
        # 非 Python 安装的处理器 getsignal 返回 None，恢复为默认行为
        return lambda: signal.signal(signal.SIGINT, previous if previous is not None else signal.SIG_DFL)

    # --------------------------------------------------------------- helpers

    def _retry(self, timeout: float, max_attempts: Optional[int] = None) -> RetryPolicy:
        retry = self.config.retry
        return RetryPolicy(
            max_attempts=max_attempts or retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
            jitter=retry.jitter,
            timeout=timeout,
        )

    def _certificate_deadline(self) -> float:
        # 退避等待 + 每次 certbot 调用 + 激活与续期
        backoff = self.config.certificate.issue_backoff
        calls = (len(backoff) + 1) * self.config.ssh.command_timeout
        return sum(backoff) + calls + self.config.retry.timeout

    def _timeout(self, ctx: StageContext, cap: Optional[float] = None) -> Optional[float]:
        """Command timeout for `ctx`: `cap` (default the SSH command timeout) bounded by the deadline."""
        return ctx.remaining(self.config.ssh.command_timeout if cap is None else cap)

    def _infra_plan(self, request: DeploymentRequest) -> InfraPlan:
        variables: Dict[str, Any] = {
            "project_id": request.project_id,
            "region": request.region,
            "zone": request.zone,
            "app_version": request.version,
        }
        if request.domain:
            variables["domain"] = request.domain
        if request.admin_email:
            variables["admin_email"] = request.admin_email
        return InfraPlan(
            name=request.effective_run_id,
            working_dir=Path(self.config.infra.terraform_dir),
            variables=variables,
        )

    def _host(self, request: DeploymentRequest, ctx: StageContext) -> SSHCredentials:
        ssh = self.config.ssh
        key_path = request.ssh_key or ssh.key_path
        auth_method = "key" if request.ssh_key else ssh.auth_method
        credentials = SSHCredentials(
            host=ctx.require("instance_external_ip"),
            username=request.ssh_user or ssh.username or getpass.getuser(),
            port=ssh.port,
            auth_method=auth_method,
            password=ssh.password,
            key_path=key_path,
            timeout=ssh.connect_timeout,
        )
        try:
            credentials.validate()
        except ValueError as exc:
            raise StageError(f"Invalid SSH settings: {exc}", kind=ErrorKind.FATAL) from exc
        return credentials

    def _remote_dir(self) -> str:
        return self.config.workload.remote_dir

    def _in_dir(self, command: str) -> str:
        return f"cd {self._remote_dir()} && {command}"

    @staticmethod
    def _http_url(request: DeploymentRequest, ctx: StageContext) -> str:
        address = ctx.get("load_balancer_ip") or ctx.require("instance_external_ip")
        return f"http://{address}"

    def _verification_stage(self, ctx: StageContext) -> VerificationStage:
        workload = self.config.workload
        return VerificationStage(
            self.executor,
            self.prober,
            services=workload.services,
            database_check=workload.database_check,
            remote_dir=self._remote_dir(),
            snapshot_enabled=workload.snapshot_enabled,
            request_timeout=self.config.probe.request_timeout,
            snapshot_timeout=self._timeout(ctx, _SNAPSHOT_TIMEOUT),
        )

    # ---------------------------------------------------------------- stages

    def _check_prerequisites(self, request: DeploymentRequest, ctx: StageContext) -> Dict[str, Any]:
        tools = [self.config.infra.terraform_binary] + list(self.config.infra.required_tools)
        found: Dict[str, str] = {}
        missing: List[str] = []
        for tool in tools:
            location = self._which(tool)
            if location:
                found[tool] = location
            else:
                missing.append(tool)
        if missing:
            raise StageError(
                f"Required tools not found on PATH: {', '.join(missing)}",
                kind=ErrorKind.FATAL,
            )
        if not Path(self.config.infra.terraform_dir).is_dir():
            raise StageError(
                f"Infrastructure plan directory not found: {self.config.infra.terraform_dir}",
                kind=ErrorKind.FATAL,
            )
        logger.info("   Tooling: %s", ", ".join(f"{k}={v}" for k, v in found.items()))

        outputs: Dict[str, Any] = {"tooling": found}
        if self.config.infra.account_checks:
            outputs["cloud_account"] = self.preflight.check(request.project_id)
        return outputs

    def _provision(self, request: DeploymentRequest, ctx: StageContext) -> Dict[str, Any]:
        outputs = self.provisioner.apply(self._infra_plan(request), timeout=ctx.remaining())
        missing = [key for key in REQUIRED_OUTPUTS if key not in outputs]
        if missing:
            raise ProvisionError(
                f"Infrastructure plan does not export: {', '.join(missing)}",
                kind=ErrorKind.FATAL,
                partial_outputs=outputs,
            )
        logger.info("   Instance address: %s", outputs["instance_external_ip"].value)
        return outputs

    def _pre_update_backup(self, request: DeploymentRequest, previous: str, ctx: StageContext) -> Dict[str, Any]:
        host = self._host(request, ctx)
        stage = self._verification_stage(ctx)
        label = f"pre-update-{_UNSAFE_LABEL.sub('_', previous)}"
        logger.info("💾 Backing up version %s before updating to %s", previous, request.version)

        outputs: Dict[str, Any] = {"pre_update_archive": stage.archive_config(host, label)}
        bucket = ctx.get("storage_bucket_name")
        if self.config.workload.snapshot_enabled and bucket:
            outputs["pre_update_snapshot"] = stage.snapshot(host, bucket, label=label)
            logger.info("   Database snapshot: %s", outputs["pre_update_snapshot"])
        return outputs

    def _configure(self, request: DeploymentRequest, ctx: StageContext) -> Dict[str, Any]:
        host = self._host(request, ctx)
        self.executor.wait_until_reachable(host)

        facts = RemoteProbe(self.executor).collect(host)
        logger.info("   Remote host: %s (%s / %s)", facts.hostname, facts.os_release, facts.kernel)
        if not facts.has_docker:
            logger.info("🐳 Installing Docker on %s", facts.hostname)
            self.executor.check(
                host,
                "curl -fsSL https://get.docker.com -o /tmp/get-docker.sh "
                "&& sudo sh /tmp/get-docker.sh && sudo usermod -aG docker $USER "
                "&& rm -f /tmp/get-docker.sh",
                timeout=self._timeout(ctx, _DOCKER_INSTALL_TIMEOUT),
            )
            # 新的 docker 组成员关系只对新会话生效
            self.executor.close(host)
        elif not facts.has_compose:
            self.executor.check(
                host,
                "sudo apt-get update && sudo apt-get install -y docker-compose-plugin",
                timeout=self._timeout(ctx, _DOCKER_INSTALL_TIMEOUT),
            )

        remote_dir = self._remote_dir()
        self.executor.check(host, (
            f"mkdir -p {remote_dir}/nginx/conf.d {remote_dir}/volumes/app/storage "
            f"{remote_dir}/volumes/app/logs {remote_dir}/volumes/nginx/logs "
            f"{remote_dir}/volumes/certbot/conf {remote_dir}/volumes/certbot/www"
        ), timeout=self._timeout(ctx))

        # 复用已有的 SECRET_KEY，重复执行时不会使会话失效
        existing = self.executor.run(
            host, self._in_dir("cat .env 2>/dev/null || true"), timeout=self._timeout(ctx)
        ).stdout
        match = _SECRET_LINE.search(existing or "")
        secret_key = match.group(1).strip() if match else secrets.token_urlsafe(42)

        http_url = self._http_url(request, ctx)
        # 证书已启用时保持 https 地址
        public_url = ctx.get("https_url") or (f"http://{request.domain}" if request.domain else http_url)
        workload = self.config.workload
        env_content = render_template(ENV_FILE, {
            "RUN_ID": ctx.run_id,
            "APP_VERSION": request.version,
            "INSTANCE_IP": ctx.require("instance_external_ip"),
            "PUBLIC_URL": public_url,
            "SECRET_KEY": secret_key,
            "DB_CONNECTION_NAME": ctx.require("db_connection_name"),
            "DB_USERNAME": ctx.get("db_username", "dify"),
            "DB_PASSWORD": ctx.require("db_password"),
            "DB_DATABASE": ctx.get("db_name", "dify"),
            "REDIS_HOST": ctx.require("redis_host"),
            "STORAGE_BUCKET_NAME": ctx.require("storage_bucket_name"),
        }, override=workload.env_template)
        compose_content = render_template(
            COMPOSE_FILE, {"APP_VERSION": request.version}, override=workload.compose_file
        )

        if ctx.attempt == 1:
            # 仅首次尝试备份：重试时 .env 可能已是新内容
            self.executor.check(host, self._in_dir(
                "if [ -f .env ]; then cp -p .env .env.bak; else rm -f .env.bak; fi"
            ), timeout=self._timeout(ctx))
        self.executor.write_file(host, f"{remote_dir}/.env", env_content, mode=0o600)
        self.executor.write_file(host, f"{remote_dir}/docker-compose.yml", compose_content)
        self.executor.write_file(
            host,
            f"{remote_dir}/nginx/conf.d/proxy.inc",
            (TEMPLATES_DIR / "proxy.inc").read_text(encoding="utf-8"),
        )
        proxy_conf = self.config.certificate.proxy_config_path
        # 已启用 TLS 的配置不覆盖
        if not self.executor.run(host, f"test -f {proxy_conf}", timeout=self._timeout(ctx)).ok:
            http_conf = render_template(NGINX_HTTP, {
                "DOMAIN": request.domain or "_",
                "UPSTREAM": self.config.certificate.upstream,
            })
            self.executor.write_file(host, proxy_conf, http_conf)

        backed_up = self.executor.run(host, self._in_dir("test -f .env.bak"), timeout=self._timeout(ctx)).ok
        return {
            "http_url": http_url,
            "host_os": facts.os_release,
            "env_backup": backed_up,
        }

    def _restore_env(self, request: DeploymentRequest, ctx: StageContext) -> None:
        host = self._host(request, ctx)
        self.executor.check(host, self._in_dir("if [ -f .env.bak ]; then mv -f .env.bak .env; fi"))

    def _start_services(self, request: DeploymentRequest, ctx: StageContext) -> Dict[str, Any]:
        host = self._host(request, ctx)
        logger.info("🚢 Pulling images and starting services")
        self.executor.check(host, self._in_dir("docker compose pull --quiet"), timeout=self._timeout(ctx, _PULL_TIMEOUT))
        self.executor.check(
            host, self._in_dir("docker compose up -d --remove-orphans"), timeout=self._timeout(ctx, _UP_TIMEOUT)
        )
        return {"services": list(self.config.workload.services), "app_version": request.version}

    def _stop_services(self, request: DeploymentRequest, ctx: StageContext) -> None:
        host = self._host(request, ctx)
        self.executor.check(host, self._in_dir("docker compose down"), timeout=600)

    def _wait_database(self, request: DeploymentRequest, ctx: StageContext) -> Dict[str, Any]:
        host = self._host(request, ctx)
        probe = self.config.probe
        spec = HealthCheckSpec.command(
            host,
            self._in_dir(self.config.workload.database_check),
            name="database",
            interval=min(probe.interval, 5.0),
            deadline=probe.deadline,
            request_timeout=probe.request_timeout,
        )
        result = self.prober.wait_for(spec, deadline=ctx.remaining(probe.deadline))
        if not result.ok:
            raise StageError(f"Database not reachable: {result.describe()}", kind=ErrorKind.VERIFICATION)
        return {"database_ready": True}

    def _migrate(self, request: DeploymentRequest, ctx: StageContext) -> Dict[str, Any]:
        command = self.config.workload.migration_command
        if not command:
            return {"migration": "skipped"}
        host = self._host(request, ctx)
        self.executor.check(host, self._in_dir(command), timeout=self._timeout(ctx, _MIGRATE_TIMEOUT))
        return {"migration": "applied"}

    def _healthcheck(self, request: DeploymentRequest, ctx: StageContext) -> Dict[str, Any]:
        probe = self.config.probe
        url = f"{self._http_url(request, ctx)}{probe.health_path}"
        spec = HealthCheckSpec.http(
            url,
            name="application",
            interval=probe.interval,
            deadline=probe.deadline,
            request_timeout=probe.request_timeout,
            failure_threshold=probe.failure_threshold,
        )
        result = self.prober.wait_for(spec, deadline=ctx.remaining(probe.deadline))
        if not result.ok:
            raise StageError(f"Application not healthy at {url}: {result.describe()}", kind=ErrorKind.VERIFICATION)
        return {"healthcheck_attempts": result.attempts}

    def _certificate_stage(self, request: DeploymentRequest, ctx: StageContext) -> CertificateStage:
        return CertificateStage(
            self.executor,
            request.domain or "",
            request.admin_email or "",
            self.config.certificate,
            remote_dir=self._remote_dir(),
            resolver=self._resolver,
            interaction_handler=self.interaction_handler,
            sleep=ctx.wait,
            cancelled=lambda: ctx.cancelled,
            command_timeout=lambda: self._timeout(ctx),
        )

    def _certificate(self, request: DeploymentRequest, ctx: StageContext) -> Dict[str, Any]:
        host = self._host(request, ctx)
        expected_ip = ctx.get("load_balancer_ip") or ctx.require("instance_external_ip")
        outputs = self._certificate_stage(request, ctx).run(host, expected_ip)

        # 应用的对外地址切换为 https
        self.executor.check(host, self._in_dir(
            f"sed -i 's|http://{request.domain}|https://{request.domain}|g' .env "
            "&& docker compose up -d api worker web"
        ), timeout=self._timeout(ctx))
        return outputs

    def _certificate_active(self, request: DeploymentRequest, ctx: StageContext) -> Optional[Dict[str, Any]]:
        """Report the certificate as applied when it is on disk and nginx already serves it."""
        host = self._host(request, ctx)
        stage = self._certificate_stage(request, ctx)
        if not stage.certificate_present(host):
            return None
        served = self.executor.run(
            host, f"grep -q ssl_certificate {self.config.certificate.proxy_config_path}"
        )
        if not served.ok:
            return None
        return {
            "certificate_state": "active",
            "certificate_domain": request.domain,
            "https_url": f"https://{request.domain}",
        }

    def _verify(self, request: DeploymentRequest, ctx: StageContext) -> Dict[str, Any]:
        host = self._host(request, ctx)
        base_url = ctx.get("https_url") or ctx.get("http_url") or self._http_url(request, ctx)
        report = self._verification_stage(ctx).run(host, base_url, bucket=ctx.get("storage_bucket_name"))
        outputs = report.to_outputs()
        outputs["endpoint"] = base_url
        return outputs
