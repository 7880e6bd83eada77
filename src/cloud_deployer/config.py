"""Configuration loading utilities for cloud-deployer."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

_DEFAULT_CONFIG_PATH = Path("config/default_config.json")


@dataclass
class SSHConfig:
    """Settings for reaching the provisioned instance."""

    username: Optional[str] = None
    port: int = 22
    auth_method: str = "key"
    password: Optional[str] = None
    key_path: Optional[str] = "~/.ssh/id_rsa"
    connect_timeout: int = 20
    connect_attempts: int = 3          # 新建虚拟机 sshd 可能尚未启动
    connect_delay: float = 10.0
    command_timeout: int = 600


@dataclass
class RetryDefaults:
    """Default retry policy applied to stages without their own."""

    max_attempts: int = 3
    base_delay: float = 5.0
    max_delay: float = 60.0
    jitter: float = 0.5
    timeout: float = 900.0             # 单次尝试的硬性时限（秒）


@dataclass
class RunnerConfig:
    """Settings for the stage runner."""

    max_workers: int = 4
    state_dir: str = ".cloud-deployer/runs"
    log_level: str = "INFO"


@dataclass
class ProbeConfig:
    """Health probe settings."""

    interval: float = 10.0
    deadline: float = 300.0
    request_timeout: float = 10.0
    failure_threshold: Optional[int] = None
    health_path: str = "/console/api/setup"


@dataclass
class CertificateConfig:
    """TLS issuance and activation settings."""

    allow_dns_override: bool = False
    issue_backoff: List[float] = field(default_factory=lambda: [60.0, 300.0, 900.0])
    cert_root: str = "~/docker-compose/volumes/certbot/conf/live"
    webroot: str = "/var/www/certbot"
    proxy_config_path: str = "~/docker-compose/nginx/conf.d/app.conf"
    upstream: str = "http://web:3000"
    renewal_schedule: str = "0 0,12 * * *"


@dataclass
class WorkloadConfig:
    """Where the workload descriptor lives locally and on the host."""

    compose_file: Optional[str] = None          # 为空时使用内置模板
    env_template: Optional[str] = None
    remote_dir: str = "~/docker-compose"
    services: List[str] = field(
        default_factory=lambda: ["api", "worker", "web", "nginx", "cloud-sql-proxy"]
    )
    database_check: str = "docker compose exec -T cloud-sql-proxy nc -z localhost 5432"
    migration_command: Optional[str] = "docker compose exec -T api flask db upgrade"
    snapshot_enabled: bool = True


@dataclass
class InfraConfig:
    """Location of the infrastructure plan."""

    terraform_dir: str = "terraform"
    terraform_binary: str = "terraform"
    apply_timeout: float = 1800.0
    # 本地必须存在的命令行工具（terraform 之外）
    required_tools: List[str] = field(default_factory=lambda: ["gcloud"])
    account_checks: bool = True        # gcloud 登录、项目与计费检查


@dataclass
class AppConfig:
    """Top-level configuration."""

    ssh: SSHConfig = field(default_factory=SSHConfig)
    retry: RetryDefaults = field(default_factory=RetryDefaults)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    certificate: CertificateConfig = field(default_factory=CertificateConfig)
    workload: WorkloadConfig = field(default_factory=WorkloadConfig)
    infra: InfraConfig = field(default_factory=InfraConfig)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        def section(name: str) -> Dict[str, Any]:
            data = payload.get(name, {}) or {}
            # 过滤掉以下划线开头的注释字段
            return {k: v for k, v in data.items() if not k.startswith("_")}

        return cls(
            ssh=SSHConfig(**{**SSHConfig().__dict__, **section("ssh")}),
            retry=RetryDefaults(**{**RetryDefaults().__dict__, **section("retry")}),
            runner=RunnerConfig(**{**RunnerConfig().__dict__, **section("runner")}),
            probe=ProbeConfig(**{**ProbeConfig().__dict__, **section("probe")}),
            certificate=CertificateConfig(
                **{**CertificateConfig().__dict__, **section("certificate")}
            ),
            workload=WorkloadConfig(**{**WorkloadConfig().__dict__, **section("workload")}),
            infra=InfraConfig(**{**InfraConfig().__dict__, **section("infra")}),
        )


def _apply_env_overrides(config: AppConfig) -> AppConfig:
    env_user = os.getenv("CLOUD_DEPLOYER_SSH_USERNAME")
    if env_user:
        config.ssh.username = env_user

    env_port = os.getenv("CLOUD_DEPLOYER_SSH_PORT")
    if env_port:
        config.ssh.port = int(env_port)

    env_password = os.getenv("CLOUD_DEPLOYER_SSH_PASSWORD")
    if env_password:
        config.ssh.password = env_password
        config.ssh.auth_method = "password"

    env_key_path = os.getenv("CLOUD_DEPLOYER_SSH_KEY_PATH")
    if env_key_path:
        config.ssh.key_path = env_key_path
        config.ssh.auth_method = "key"

    env_state_dir = os.getenv("CLOUD_DEPLOYER_STATE_DIR")
    if env_state_dir:
        config.runner.state_dir = env_state_dir

    env_workers = os.getenv("CLOUD_DEPLOYER_MAX_WORKERS")
    if env_workers:
        config.runner.max_workers = int(env_workers)

    env_log_level = os.getenv("CLOUD_DEPLOYER_LOG_LEVEL")
    if env_log_level:
        config.runner.log_level = env_log_level

    env_tf_dir = os.getenv("CLOUD_DEPLOYER_TERRAFORM_DIR")
    if env_tf_dir:
        config.infra.terraform_dir = env_tf_dir

    return config


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    An explicit `path` must exist. When no path is given and the default file
    is absent, built-in defaults are used.

    Environment variables (higher priority than config file):
    - CLOUD_DEPLOYER_SSH_USERNAME / _SSH_PORT / _SSH_PASSWORD / _SSH_KEY_PATH
    - CLOUD_DEPLOYER_STATE_DIR: where run state files are kept
    - CLOUD_DEPLOYER_MAX_WORKERS: concurrent stage limit
    - CLOUD_DEPLOYER_LOG_LEVEL
    - CLOUD_DEPLOYER_TERRAFORM_DIR: infrastructure plan directory
    """

    if path:
        candidate = Path(path)
        if not candidate.is_file():
            raise FileNotFoundError(f"Could not find configuration file: {candidate}")
    else:
        candidate = _DEFAULT_CONFIG_PATH

    if candidate.is_file():
        with candidate.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        config = AppConfig.from_dict(data)
    else:
        config = AppConfig()

    return _apply_env_overrides(config)
