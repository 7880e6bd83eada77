import socket
import unittest

from fakes import FakeExecutor

from cloud_deployer.certificates import CertificateStage, CertificateState
from cloud_deployer.config import CertificateConfig
from cloud_deployer.errors import CertificateError, ErrorKind, StageDeferred
from cloud_deployer.interaction import AutoResponseHandler
from cloud_deployer.ssh import SSHCredentials

HOST = SSHCredentials(host="34.1.2.3", username="deploy")
IP = "34.1.2.3"
CONF = "~/docker-compose/nginx/conf.d/app.conf"


class CertificateStageTests(unittest.TestCase):
    def setUp(self) -> None:
        self.executor = FakeExecutor()
        self.sleeps = []

    def _stage(self, resolved=IP, config=None, handler=None) -> CertificateStage:
        def resolver(domain):
            if isinstance(resolved, Exception):
                raise resolved
            return resolved

        return CertificateStage(
            self.executor,
            "example.com",
            "ops@example.com",
            config or CertificateConfig(),
            resolver=resolver,
            interaction_handler=handler,
            sleep=self.sleeps.append,
        )

    # ---------------------------------------------------------------- DNS

    def test_matching_dns_validates(self) -> None:
        stage = self._stage()
        stage.validate_dns(IP)
        self.assertEqual(stage.state, CertificateState.DNS_VALIDATED)
        self.assertFalse(stage.dns_overridden)

    def test_mismatch_without_override_defers_before_certbot(self) -> None:
        stage = self._stage(resolved="10.0.0.9")
        with self.assertRaises(StageDeferred) as ctx:
            stage.run(HOST, IP)
        self.assertIn("10.0.0.9", ctx.exception.reason)
        self.assertEqual(stage.state, CertificateState.UNBOUND)
        self.assertEqual(self.executor.ran("certbot certonly"), [])

    def test_unresolvable_domain_defers(self) -> None:
        stage = self._stage(resolved=socket.gaierror("Name or service not known"))
        with self.assertRaises(StageDeferred) as ctx:
            stage.validate_dns(IP)
        self.assertIn("resolves to nothing", ctx.exception.reason)

    def test_operator_declining_defers(self) -> None:
        handler = AutoResponseHandler(always_confirm=False)
        stage = self._stage(resolved="10.0.0.9", handler=handler)
        with self.assertRaises(StageDeferred):
            stage.validate_dns(IP)
        self.assertEqual(len(handler.requests), 1)
        self.assertIn("example.com", handler.requests[0].question)

    def test_operator_confirmation_overrides_mismatch(self) -> None:
        stage = self._stage(resolved="10.0.0.9", handler=AutoResponseHandler(always_confirm=True))
        stage.validate_dns(IP)
        self.assertEqual(stage.state, CertificateState.DNS_VALIDATED)
        self.assertTrue(stage.dns_overridden)

    def test_configured_override_skips_the_question(self) -> None:
        handler = AutoResponseHandler(always_confirm=False)
        stage = self._stage(
            resolved="10.0.0.9",
            config=CertificateConfig(allow_dns_override=True),
            handler=handler,
        )
        stage.validate_dns(IP)
        self.assertTrue(stage.dns_overridden)
        self.assertEqual(handler.requests, [])

    # ------------------------------------------------------------- issuance

    def test_existing_certificate_skips_certbot(self) -> None:
        self.executor.on("test -s", 0)
        stage = self._stage()
        stage.validate_dns(IP)
        stage.issue(HOST)
        self.assertEqual(stage.state, CertificateState.ISSUED)
        self.assertEqual(self.executor.ran("certbot certonly"), [])

    def test_certbot_retry_uses_coarse_backoff(self) -> None:
        self.executor.on("test -s", 1)
        self.executor.on("certbot certonly", (1, "", "too many requests"), 0)
        stage = self._stage()
        stage.validate_dns(IP)
        stage.issue(HOST)
        self.assertEqual(stage.state, CertificateState.ISSUED)
        self.assertEqual(self.sleeps, [60.0])
        self.assertEqual(len(self.executor.ran("certbot certonly")), 2)

    def test_certbot_exhaustion_returns_to_dns_validated(self) -> None:
        self.executor.on("test -s", 1)
        self.executor.on("certbot certonly", (1, "", "Challenge failed for domain example.com"))
        stage = self._stage()
        stage.validate_dns(IP)
        with self.assertRaises(CertificateError) as ctx:
            stage.issue(HOST)
        self.assertEqual(ctx.exception.kind, ErrorKind.TRANSIENT)
        self.assertIn("Challenge failed", ctx.exception.message)
        self.assertEqual(self.sleeps, [60.0, 300.0, 900.0])
        self.assertEqual(len(self.executor.ran("certbot certonly")), 4)
        self.assertEqual(stage.state, CertificateState.DNS_VALIDATED)

    def test_cancel_during_backoff_stops_further_certbot_calls(self) -> None:
        self.executor.on("test -s", 1)
        self.executor.on("certbot certonly", (1, "", "too many requests"))
        cancelled = []
        stage = CertificateStage(
            self.executor,
            "example.com",
            "ops@example.com",
            CertificateConfig(),
            resolver=lambda domain: IP,
            sleep=lambda seconds: cancelled.append(seconds),
            cancelled=lambda: bool(cancelled),
            command_timeout=lambda: 42.0,
        )
        stage.validate_dns(IP)
        with self.assertRaises(CertificateError) as ctx:
            stage.issue(HOST)
        self.assertIn("after 1 attempt(s)", ctx.exception.message)
        self.assertEqual(len(self.executor.ran("certbot certonly")), 1)
        self.assertEqual(cancelled, [60.0])
        self.assertIn(42.0, self.executor.timeouts)
        self.assertEqual(stage.state, CertificateState.DNS_VALIDATED)

    def test_illegal_transition_is_fatal(self) -> None:
        self.executor.on("test -s", 0)
        stage = self._stage()
        with self.assertRaises(CertificateError) as ctx:
            stage.issue(HOST)
        self.assertEqual(ctx.exception.kind, ErrorKind.FATAL)

    # ----------------------------------------------------------- activation

    def test_activation_switches_proxy_to_tls(self) -> None:
        self.executor.on("test -s", 0)
        stage = self._stage()
        stage.state = CertificateState.ISSUED
        stage.activate(HOST)

        self.assertEqual(stage.state, CertificateState.ACTIVE)
        rendered = self.executor.files[CONF + ".tmp"]
        self.assertIn("ssl_certificate /etc/letsencrypt/live/example.com/fullchain.pem;", rendered)
        self.assertIn("return 301 https://$host$request_uri;", rendered)
        self.assertEqual(len(self.executor.ran("app.conf.bak")), 1)
        self.assertEqual(len(self.executor.ran("nginx -s reload")), 1)

    def test_failed_reload_restores_backup(self) -> None:
        self.executor.on("test -s", 0)
        self.executor.on("test -f", 0)
        self.executor.on("nginx -t", (1, "", "nginx: [emerg] cannot load certificate"), 0)
        stage = self._stage()
        stage.state = CertificateState.ISSUED

        with self.assertRaises(CertificateError) as ctx:
            stage.activate(HOST)

        self.assertEqual(ctx.exception.kind, ErrorKind.TRANSIENT)
        self.assertEqual(stage.state, CertificateState.ISSUED)
        restores = [c for c in self.executor.commands if c.startswith("mv -f") and "app.conf.bak" in c]
        self.assertEqual(len(restores), 1)
        self.assertEqual(len(self.executor.ran("nginx -s reload")), 1)

    def test_rollback_without_backup_rewrites_http_config(self) -> None:
        self.executor.on("test -f", 1)
        stage = self._stage()
        stage.state = CertificateState.ACTIVE
        stage.rollback(HOST)
        self.assertEqual(stage.state, CertificateState.ISSUED)
        self.assertNotIn("ssl_certificate", self.executor.files[CONF])
        self.assertIn("server_name example.com;", self.executor.files[CONF])

    def test_renewal_failure_only_warns(self) -> None:
        self.executor.on("crontab", (1, "", "crontab: command not found"))
        self.assertFalse(self._stage().install_renewal(HOST))

    def test_full_run_outputs(self) -> None:
        # 签发前证书不存在，签发后存在
        self.executor.on("test -s", 1, 0)
        stage = self._stage()
        outputs = stage.run(HOST, IP)
        self.assertEqual(outputs["certificate_state"], "active")
        self.assertEqual(outputs["https_url"], "https://example.com")
        self.assertTrue(outputs["certificate_renewal_installed"])
        self.assertFalse(outputs["certificate_dns_overridden"])
        entry = self.executor.ran("crontab")[0]
        self.assertIn("cloud-deployer renew example.com", entry)


if __name__ == "__main__":
    unittest.main()
