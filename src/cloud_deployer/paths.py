"""Unified path constants for cloud-deployer.

All data is stored under .cloud-deployer directory:
- .cloud-deployer/runs/   # Persisted run state, one JSON file per run id
- .cloud-deployer/logs/   # Per-run log files
"""

from pathlib import Path
from typing import Optional

# 基础目录（在当前工作目录下）
BASE_DIR = Path(".cloud-deployer")

RUNS_DIR = BASE_DIR / "runs"
LOGS_DIR = BASE_DIR / "logs"


def get_runs_dir(override: Optional[str] = None) -> Path:
    """获取运行状态目录."""
    path = Path(override) if override else RUNS_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_logs_dir(state_dir: Optional[str] = None) -> Path:
    """获取日志目录（与运行状态目录同级）."""
    path = Path(state_dir).parent / "logs" if state_dir else LOGS_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path
