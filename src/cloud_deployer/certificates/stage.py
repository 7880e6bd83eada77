"""TLS certificate issuance and activation for the reverse proxy."""

from __future__ import annotations

import logging
import shlex
import socket
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..config import CertificateConfig
from ..errors import CertificateError, ErrorKind, StageDeferred, StageError
from ..interaction import UserInteractionHandler
from ..ssh import RemoteExecutor, SSHCredentials
from ..templates import NGINX_HTTP, NGINX_TLS, render_template

logger = logging.getLogger(__name__)


class CertificateState(str, Enum):
    """证书生命周期"""
    UNBOUND = "unbound"
    DNS_VALIDATED = "dns_validated"
    ISSUING = "issuing"
    ISSUED = "issued"
    ACTIVE = "active"


_TRANSITIONS: Dict[CertificateState, tuple] = {
    CertificateState.UNBOUND: (CertificateState.DNS_VALIDATED,),
    # 证书已在磁盘上时跳过签发
    CertificateState.DNS_VALIDATED: (CertificateState.ISSUING, CertificateState.ISSUED),
    CertificateState.ISSUING: (CertificateState.ISSUED, CertificateState.DNS_VALIDATED),
    CertificateState.ISSUED: (CertificateState.ACTIVE,),
    # 回滚：恢复旧代理配置
    CertificateState.ACTIVE: (CertificateState.ISSUED,),
}


def _remote(path: str) -> str:
    """Quote a remote path for the shell while still expanding a leading ``~``."""
    if path.startswith("~/"):
        return '"$HOME/' + path[2:].replace('"', '\\"') + '"'
    return shlex.quote(path)


class CertificateStage:
    """Validates DNS, issues a certificate with certbot and switches nginx to TLS.

    The object is bound to one domain; `run` drives the whole state machine
    and returns the stage outputs.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        domain: str,
        admin_email: str,
        config: Optional[CertificateConfig] = None,
        *,
        remote_dir: str = "~/docker-compose",
        resolver: Callable[[str], str] = socket.gethostbyname,
        interaction_handler: Optional[UserInteractionHandler] = None,
        sleep: Callable[[float], None] = time.sleep,
        cancelled: Callable[[], bool] = lambda: False,
        command_timeout: Callable[[], Optional[float]] = lambda: None,
    ) -> None:
        self.executor = executor
        self.domain = domain
        self.admin_email = admin_email
        self.config = config or CertificateConfig()
        self.remote_dir = remote_dir
        self._resolve = resolver
        self._interaction = interaction_handler
        self._sleep = sleep
        self._cancelled = cancelled
        self._command_timeout = command_timeout
        self.state = CertificateState.UNBOUND
        self.dns_overridden = False

    # ------------------------------------------------------------ state machine

    def _transition(self, target: CertificateState) -> None:
        allowed = _TRANSITIONS.get(self.state, ())
        if target not in allowed:
            raise CertificateError(
                f"Illegal certificate transition {self.state.value} -> {target.value}",
                kind=ErrorKind.FATAL,
            )
        logger.debug("   certificate %s: %s -> %s", self.domain, self.state.value, target.value)
        self.state = target

    @property
    def cert_dir(self) -> str:
        return f"{self.config.cert_root.rstrip('/')}/{self.domain}"

    @property
    def container_cert_path(self) -> str:
        return f"/etc/letsencrypt/live/{self.domain}/fullchain.pem"

    @property
    def container_key_path(self) -> str:
        return f"/etc/letsencrypt/live/{self.domain}/privkey.pem"

    @property
    def backup_path(self) -> str:
        return f"{self.config.proxy_config_path}.bak"

    # ------------------------------------------------------------------ phases

    def validate_dns(self, expected_ip: str) -> None:
        """Compare the domain's A record with `expected_ip`.

        On mismatch the stage proceeds only when the override is configured or
        the operator confirms; otherwise it is deferred.
        """
        try:
            resolved: Optional[str] = self._resolve(self.domain)
        except (socket.gaierror, OSError) as exc:
            logger.warning("   DNS lookup for %s failed: %s", self.domain, exc)
            resolved = None

        if resolved == expected_ip:
            logger.info("✅ Domain %s resolves to %s", self.domain, expected_ip)
            self._transition(CertificateState.DNS_VALIDATED)
            return

        message = (
            f"Domain {self.domain} resolves to {resolved or 'nothing'}, "
            f"but the deployment address is {expected_ip}"
        )
        logger.warning("⚠️  %s", message)

        if self.config.allow_dns_override:
            logger.warning("   Proceeding anyway (allow_dns_override is set)")
        elif self._interaction is not None and self._interaction.confirm(
            f"Issue a certificate for {self.domain} anyway?",
            context=f"{message}. Certificate issuance will likely fail until DNS points here.",
        ):
            logger.warning("   Operator confirmed DNS override")
        else:
            raise StageDeferred(f"{message}; point the domain at {expected_ip} and resume")

        self.dns_overridden = True
        self._transition(CertificateState.DNS_VALIDATED)

    def certificate_present(self, host: SSHCredentials) -> bool:
        result = self.executor.run(host, f"test -s {_remote(self.cert_dir + '/fullchain.pem')}")
        return result.ok

    def issue(self, host: SSHCredentials) -> None:
        """Run certbot (webroot mode) with a coarse backoff between attempts."""
        if self.certificate_present(host):
            logger.info("   Certificate for %s already on disk, skipping issuance", self.domain)
            self._transition(CertificateState.ISSUED)
            return

        self._transition(CertificateState.ISSUING)
        command = (
            f"cd {_remote(self.remote_dir)} && docker compose run --rm certbot certonly --webroot "
            f"--webroot-path={shlex.quote(self.config.webroot)} "
            f"--email {shlex.quote(self.admin_email)} --agree-tos --no-eff-email "
            f"--non-interactive --keep-until-expiring -d {shlex.quote(self.domain)}"
        )
        schedule: List[float] = list(self.config.issue_backoff)
        attempts = len(schedule) + 1
        last_detail = ""

        for attempt in range(1, attempts + 1):
            logger.info("🔐 Requesting certificate for %s (%d/%d)", self.domain, attempt, attempts)
            result = self.executor.run(host, command, timeout=self._command_timeout())
            if result.ok:
                self._transition(CertificateState.ISSUED)
                logger.info("✅ Certificate issued for %s", self.domain)
                return

            last_detail = (result.stderr or result.stdout or "").strip()[-500:]
            logger.warning("   certbot failed: %s", last_detail or f"exit {result.exit_status}")
            if attempt < attempts:
                if self._cancelled():
                    break
                delay = schedule[attempt - 1]
                logger.info("   Waiting %.0fs before the next issuance attempt", delay)
                self._sleep(delay)
                if self._cancelled():
                    break

        self._transition(CertificateState.DNS_VALIDATED)
        raise CertificateError(
            f"Certificate issuance for {self.domain} failed after {attempt} attempt(s): {last_detail}",
            kind=ErrorKind.TRANSIENT,
        )

    def activate(self, host: SSHCredentials) -> None:
        """Swap the proxy config to TLS; a failed reload restores the backup."""
        if not self.certificate_present(host):
            raise CertificateError(
                f"Certificate for {self.domain} not found under {self.cert_dir}",
                kind=ErrorKind.TRANSIENT,
            )

        conf = self.config.proxy_config_path
        self.executor.check(host, f"if [ -f {_remote(conf)} ]; then cp -p {_remote(conf)} {_remote(self.backup_path)}; fi")

        rendered = render_template(NGINX_TLS, {
            "DOMAIN": self.domain,
            "CERT_PATH": self.container_cert_path,
            "KEY_PATH": self.container_key_path,
            "UPSTREAM": self.config.upstream,
        })
        staging = f"{conf}.tmp"
        self.executor.write_file(host, staging, rendered)
        self.executor.check(host, f"mv -f {_remote(staging)} {_remote(conf)}")

        try:
            self._reload_proxy(host)
        except StageError as exc:
            logger.error("❌ Proxy reload failed, restoring previous configuration")
            try:
                self.rollback(host)
            except StageError as restore_exc:
                logger.error("   Restore failed as well: %s", restore_exc)
            raise CertificateError(f"TLS activation failed: {exc.message}", kind=ErrorKind.TRANSIENT) from exc

        self._transition(CertificateState.ACTIVE)
        logger.info("🔒 TLS active for https://%s", self.domain)

    def install_renewal(self, host: SSHCredentials) -> bool:
        """Install the twice-daily renewal cron entry; failure only warns."""
        renew = (
            f"cd {self.remote_dir} && docker compose run --rm certbot renew --quiet "
            f"&& docker compose exec -T nginx nginx -s reload"
        )
        entry = f"{self.config.renewal_schedule} {renew} # cloud-deployer renew {self.domain}"
        command = (
            f"(crontab -l 2>/dev/null | grep -v {shlex.quote('cloud-deployer renew ' + self.domain)}; "
            f"echo {shlex.quote(entry)}) | crontab -"
        )
        try:
            result = self.executor.run(host, command)
        except StageError as exc:
            logger.warning("⚠️  Could not install certificate renewal: %s", exc)
            return False
        if not result.ok:
            logger.warning("⚠️  Could not install certificate renewal: %s", result.stderr.strip())
            return False
        return True

    def rollback(self, host: SSHCredentials) -> None:
        """Compensating action: restore the pre-TLS proxy config and reload."""
        logger.warning("↩️  Restoring HTTP proxy configuration for %s", self.domain)
        backup_exists = self.executor.run(host, f"test -f {_remote(self.backup_path)}").ok
        if backup_exists:
            self._restore(host)
        else:
            # 没有备份时重新渲染 HTTP 配置
            rendered = render_template(NGINX_HTTP, {"DOMAIN": self.domain, "UPSTREAM": self.config.upstream})
            self.executor.write_file(host, self.config.proxy_config_path, rendered)
            self._reload_proxy(host)
        if self.state == CertificateState.ACTIVE:
            self._transition(CertificateState.ISSUED)

    def run(self, host: SSHCredentials, expected_ip: str) -> Dict[str, object]:
        """Drive the certificate through validation, issuance and activation."""
        self.validate_dns(expected_ip)
        self.issue(host)
        self.activate(host)
        renewal = self.install_renewal(host)
        return {
            "certificate_state": self.state.value,
            "certificate_domain": self.domain,
            "certificate_dns_overridden": self.dns_overridden,
            "certificate_renewal_installed": renewal,
            "https_url": f"https://{self.domain}",
        }

    # ------------------------------------------------------------------ helpers

    def _restore(self, host: SSHCredentials) -> None:
        self.executor.check(host, f"mv -f {_remote(self.backup_path)} {_remote(self.config.proxy_config_path)}")
        self._reload_proxy(host)

    def _reload_proxy(self, host: SSHCredentials) -> None:
        base = f"cd {_remote(self.remote_dir)} && docker compose exec -T nginx"
        self.executor.check(host, f"{base} nginx -t", kind=ErrorKind.TRANSIENT)
        self.executor.check(host, f"{base} nginx -s reload", kind=ErrorKind.TRANSIENT)
