import tempfile
import time
import unittest
from pathlib import Path

from fakes import FakeExecutor, FakeProber

from cloud_deployer.config import AppConfig
from cloud_deployer.errors import ErrorKind, ProvisionError, RunStateError, StageError
from cloud_deployer.health import ProbeStatus
from cloud_deployer.interaction import AutoResponseHandler
from cloud_deployer.orchestrator import Output, RunStatus, StageContext, StageStatus, StateStore
from cloud_deployer.ssh import SSHCommandResult
from cloud_deployer.workflow import DeploymentRequest, DeploymentWorkflow

IP = "34.1.2.3"
SERVICES_RUNNING = "api\nworker\nweb\nnginx\ncloud-sql-proxy\n"


class FakeProvisioner:
    def __init__(self, outputs=None, error=None) -> None:
        self._outputs = outputs if outputs is not None else {
            "instance_external_ip": Output(IP),
            "db_connection_name": Output("demo:us-central1:db"),
            "db_password": Output("pa55", sensitive=True),
            "redis_host": Output("10.0.0.3"),
            "storage_bucket_name": Output("demo-bucket"),
        }
        self.error = error
        self.applied = 0
        self.destroyed = 0
        self.timeouts = []

    def apply(self, plan, timeout=None):
        self.applied += 1
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        return dict(self._outputs)

    def outputs(self, plan):
        return dict(self._outputs)

    def destroy(self, plan):
        self.destroyed += 1


class FakePreflight:
    def __init__(self, error=None) -> None:
        self.error = error
        self.projects = []

    def check(self, project_id):
        self.projects.append(project_id)
        if self.error is not None:
            raise self.error
        return "ops@example.com"


class EnvTrackingExecutor(FakeExecutor):
    """Keeps the remote .env and its backup in memory."""

    ENV_PATH = "~/docker-compose/.env"

    def __init__(self, env=None) -> None:
        super().__init__()
        self.env = env
        self.backup = None

    def run(self, host, command, timeout=None):
        result = super().run(host, command, timeout)
        if "cat .env" in command:
            return SSHCommandResult(command, self.env or "", "", 0)
        if "test -f .env.bak" in command:
            return SSHCommandResult(command, "", "", 0 if self.backup is not None else 1)
        if "cp -p .env .env.bak" in command:
            self.backup = self.env
        elif "mv -f .env.bak .env" in command and self.backup is not None:
            self.env, self.backup = self.backup, None
        return result

    def write_file(self, host, path, content, mode=0o644):
        super().write_file(host, path, content, mode)
        if path == self.ENV_PATH:
            self.env = content


class DeploymentRequestTests(unittest.TestCase):
    def test_domain_requires_email(self) -> None:
        with self.assertRaises(ValueError):
            DeploymentRequest("demo", "us-central1", "us-central1-a", domain="example.com").validate()

    def test_invalid_domain_and_email(self) -> None:
        with self.assertRaises(ValueError):
            DeploymentRequest("demo", "r", "z", domain="bad domain", admin_email="a@b.io").validate()
        with self.assertRaises(ValueError):
            DeploymentRequest("demo", "r", "z", domain="example.com", admin_email="nope").validate()

    def test_run_id_defaults_to_project(self) -> None:
        request = DeploymentRequest("demo", "r", "z")
        self.assertEqual(request.effective_run_id, "demo")
        self.assertNotIn("ssh_key", DeploymentRequest("demo", "r", "z", ssh_key="~/.ssh/id").to_metadata())


class DeploymentWorkflowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        root = Path(self.tmp.name)
        (root / "terraform").mkdir()

        self.config = AppConfig()
        self.config.infra.terraform_dir = str(root / "terraform")
        self.store = StateStore(root / "runs")
        self.executor = FakeExecutor()
        self.executor.on("docker compose ps", (0, SERVICES_RUNNING))
        self.prober = FakeProber()
        self.provisioner = FakeProvisioner()
        self.handler = AutoResponseHandler()
        self.preflight = FakePreflight()

    def _workflow(self, resolved=IP, which=None) -> DeploymentWorkflow:
        return DeploymentWorkflow(
            self.config,
            self.handler,
            executor=self.executor,  # type: ignore[arg-type]
            provisioner=self.provisioner,  # type: ignore[arg-type]
            prober=self.prober,  # type: ignore[arg-type]
            store=self.store,
            preflight=self.preflight,  # type: ignore[arg-type]
            which=which or (lambda tool: f"/usr/bin/{tool}"),
            resolver=lambda domain: resolved,
        )

    def test_plan_without_domain_has_no_certificate_stage(self) -> None:
        plan = self._workflow().build_plan(DeploymentRequest("demo", "r", "z"))
        names = [stage.name for stage in plan.topological_order()]
        self.assertEqual(names, [
            "prerequisites", "provision", "configure", "start_services",
            "wait_database", "migrate", "healthcheck", "verify",
        ])
        self.assertEqual(plan["verify"].depends_on, ("healthcheck",))

    def test_plan_with_domain_gates_verify_on_certificate(self) -> None:
        request = DeploymentRequest("demo", "r", "z", domain="example.com", admin_email="ops@example.com")
        plan = self._workflow().build_plan(request)
        certificate = plan["certificate"]
        self.assertFalse(certificate.idempotent)
        self.assertIsNotNone(certificate.precondition)
        self.assertEqual(plan["verify"].depends_on, ("certificate",))
        self.assertTrue(plan["migrate"].best_effort)

    def test_full_run_with_domain_succeeds(self) -> None:
        request = DeploymentRequest("demo", "us-central1", "us-central1-a",
                                    domain="example.com", admin_email="ops@example.com")
        state = self._workflow().run(request)

        self.assertEqual(state.status, RunStatus.SUCCEEDED, state.failure_summary())
        self.assertEqual(state.outputs["endpoint"].value, "https://example.com")
        self.assertTrue(state.outputs["snapshot_uri"].value.startswith("gs://demo-bucket/"))
        env = self.executor.files["~/docker-compose/.env"]
        self.assertIn("DB_PASSWORD=pa55", env)
        self.assertIn("INSTANCE_IP=34.1.2.3", env)
        self.assertIn("~/docker-compose/docker-compose.yml", self.executor.files)
        self.assertIn("all", self.executor.closed)

        persisted = self.store.load("demo")
        self.assertEqual(persisted.status, RunStatus.SUCCEEDED)
        self.assertEqual(persisted.metadata["domain"], "example.com")
        self.assertIsNone(persisted.outputs["db_password"].value)

    def test_existing_state_requires_resume(self) -> None:
        request = DeploymentRequest("demo", "r", "z")
        self._workflow().run(request)
        with self.assertRaises(RunStateError):
            self._workflow().run(request)

        resumed = self._workflow().run(request, resume=True)
        self.assertEqual(resumed.status, RunStatus.SUCCEEDED)
        self.assertEqual(self.provisioner.applied, 1)

    def test_resume_of_another_project_is_refused(self) -> None:
        self._workflow().run(DeploymentRequest("demo", "r", "z", run_id="shared"))
        with self.assertRaises(RunStateError):
            self._workflow().run(DeploymentRequest("other", "r", "z", run_id="shared"), resume=True)

    def test_missing_tool_fails_fast(self) -> None:
        workflow = self._workflow(which=lambda tool: None if tool == "gcloud" else f"/usr/bin/{tool}")
        state = workflow.run(DeploymentRequest("demo", "r", "z"))
        self.assertEqual(state.status, RunStatus.FAILED)
        self.assertEqual(state.failed_stage, "prerequisites")
        self.assertIn("gcloud", state.results["prerequisites"].last_error)
        self.assertEqual(self.provisioner.applied, 0)

    def test_fatal_provision_failure_is_not_retried(self) -> None:
        self.provisioner.error = ProvisionError("could not find default credentials", kind=ErrorKind.FATAL)
        state = self._workflow().run(DeploymentRequest("demo", "r", "z"))
        self.assertEqual(state.status, RunStatus.FAILED)
        self.assertEqual(state.results["provision"].attempts, 1)
        self.assertEqual(self.provisioner.destroyed, 0)
        self.assertEqual(self.executor.commands, [])

    def test_missing_required_output_destroys_partial_infrastructure(self) -> None:
        self.provisioner = FakeProvisioner(outputs={"instance_external_ip": Output(IP)})
        state = self._workflow().run(DeploymentRequest("demo", "r", "z"))
        self.assertEqual(state.status, RunStatus.FAILED)
        self.assertIn("db_password", state.results["provision"].last_error)
        self.assertEqual(self.provisioner.destroyed, 1)

    def test_dns_mismatch_halts_before_certificate(self) -> None:
        request = DeploymentRequest("demo", "r", "z", domain="example.com", admin_email="ops@example.com")
        state = self._workflow(resolved="10.9.9.9").run(request)

        self.assertEqual(state.status, RunStatus.HALTED)
        self.assertEqual(state.results["certificate"].status, StageStatus.PENDING)
        self.assertEqual(state.results["verify"].status, StageStatus.PENDING)
        self.assertEqual(state.results["healthcheck"].status, StageStatus.SUCCEEDED)
        self.assertEqual(self.executor.ran("certbot certonly"), [])
        self.assertEqual(self.provisioner.destroyed, 0)
        self.assertEqual(len(self.handler.requests), 1)

    def test_every_stage_has_a_deadline(self) -> None:
        workflow = self._workflow()
        for request in (
            DeploymentRequest("demo", "r", "z"),
            DeploymentRequest("demo", "r", "z", domain="example.com", admin_email="ops@example.com"),
        ):
            plan = workflow.build_plan(request, update_from="1.0")
            for stage in plan.stages:
                self.assertIsNotNone(stage.retry.timeout, stage.name)
        self.assertGreater(plan["provision"].retry.timeout, self.config.infra.apply_timeout)
        self.assertGreater(plan["certificate"].retry.timeout, sum(self.config.certificate.issue_backoff))

    def test_stage_deadlines_reach_long_commands(self) -> None:
        state = self._workflow().run(DeploymentRequest("demo", "r", "z"))
        self.assertEqual(state.status, RunStatus.SUCCEEDED, state.failure_summary())
        self.assertIsNotNone(self.provisioner.timeouts[0])
        self.assertLessEqual(self.provisioner.timeouts[0], self.config.infra.apply_timeout + 300)
        timeouts = dict(zip(self.executor.commands, self.executor.timeouts))
        for pattern in ("docker compose pull", "docker compose up", "pg_dump"):
            command = self.executor.ran(pattern)[0]
            self.assertIsNotNone(timeouts[command], pattern)
        pull = timeouts[self.executor.ran("docker compose pull")[0]]
        self.assertLessEqual(pull, 1800)

    def test_invalid_ssh_settings_fail_configure_without_retry(self) -> None:
        self.config.ssh.auth_method = "password"
        self.config.ssh.password = None
        state = self._workflow().run(DeploymentRequest("demo", "r", "z"))

        self.assertEqual(state.status, RunStatus.FAILED)
        result = state.results["configure"]
        self.assertEqual(result.error_kind, ErrorKind.FATAL)
        self.assertEqual(result.attempts, 1)
        self.assertIn("no password provided", result.last_error)
        self.assertEqual(self.executor.reached, [])

    def test_cloud_account_problem_stops_before_provisioning(self) -> None:
        self.preflight.error = StageError(
            "Found 1 cloud account issue(s): Billing is not enabled for project 'demo'",
            kind=ErrorKind.FATAL,
        )
        state = self._workflow().run(DeploymentRequest("demo", "r", "z"))

        self.assertEqual(state.status, RunStatus.FAILED)
        self.assertEqual(state.failed_stage, "prerequisites")
        self.assertIn("Billing", state.results["prerequisites"].last_error)
        self.assertEqual(self.preflight.projects, ["demo"])
        self.assertEqual(self.provisioner.applied, 0)

    def test_account_checks_can_be_disabled(self) -> None:
        self.config.infra.account_checks = False
        state = self._workflow().run(DeploymentRequest("demo", "r", "z"))
        self.assertEqual(state.status, RunStatus.SUCCEEDED, state.failure_summary())
        self.assertEqual(self.preflight.projects, [])

    def test_new_version_backs_up_then_redeploys(self) -> None:
        request = DeploymentRequest("demo", "r", "z", domain="example.com",
                                    admin_email="ops@example.com", version="1.0")
        self._workflow().run(request)
        self.executor.commands.clear()

        request.version = "2.0"
        state = self._workflow().run(request, resume=True)

        self.assertEqual(state.status, RunStatus.SUCCEEDED, state.failure_summary())
        self.assertEqual(state.results["pre_update_backup"].status, StageStatus.SUCCEEDED)
        archive = self.executor.ran("tar -czf backups/pre-update-1.0-")
        self.assertEqual(len(archive), 1)
        self.assertTrue(state.outputs["pre_update_snapshot"].value.startswith(
            "gs://demo-bucket/backups/pre-update-1.0-"))
        self.assertTrue(self.executor.ran("docker compose pull"))
        self.assertEqual(self.executor.ran("certbot certonly"), [])
        self.assertEqual(self.provisioner.applied, 1)

        env = self.executor.files["~/docker-compose/.env"]
        self.assertIn("APP_VERSION=2.0", env)
        self.assertIn("PUBLIC_URL=https://example.com", env)
        self.assertEqual(state.metadata["version"], "2.0")
        self.assertEqual(state.metadata["previous_version"], "1.0")

    def test_same_version_resume_has_no_backup_stage(self) -> None:
        request = DeploymentRequest("demo", "r", "z", version="1.0")
        self._workflow().run(request)
        state = self._workflow().run(request, resume=True)
        self.assertNotIn("pre_update_backup", state.results)
        self.assertEqual(self.executor.ran("tar -czf"), [])

    def test_rollback_restores_env_from_before_the_first_attempt(self) -> None:
        original = "SECRET_KEY=old\nAPP_VERSION=0.9\n"
        self.executor = EnvTrackingExecutor(env=original)
        self.executor.on("docker compose ps", (0, SERVICES_RUNNING))
        self.executor.fail_upload("docker-compose.yml")
        self.prober = FakeProber(ProbeStatus.TIMEOUT)
        self.config.retry.base_delay = 0.0
        self.config.retry.jitter = 0.0

        state = self._workflow().run(DeploymentRequest("demo", "r", "z", version="1.0"))

        self.assertEqual(state.status, RunStatus.FAILED)
        self.assertEqual(state.results["configure"].attempts, 2)
        self.assertEqual(state.results["configure"].status, StageStatus.ROLLED_BACK)
        self.assertEqual(len(self.executor.ran("cp -p .env .env.bak")), 1)
        self.assertEqual(self.executor.env, original)

    def test_certificate_backoff_wakes_when_attempt_is_aborted(self) -> None:
        request = DeploymentRequest("demo", "r", "z", domain="example.com", admin_email="ops@example.com")
        ctx = StageContext("demo", "certificate", 1, {"instance_external_ip": IP})
        stage = self._workflow()._certificate_stage(request, ctx)
        ctx.abort()

        started = time.monotonic()
        stage._sleep(60)
        self.assertLess(time.monotonic() - started, 1.0)
        self.assertTrue(stage._cancelled())


if __name__ == "__main__":
    unittest.main()
