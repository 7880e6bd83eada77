"""Orchestrator module for stage-based deployment execution.

This module provides a structured approach to deployment:
- DeploymentPlan/Stage: ordered, dependency-annotated units of work
- StageRunner: executes a plan with retries, persistence and rollback
- DeploymentState/StageResult: the persisted record of a run
- StateStore: JSON persistence keyed by run id
"""

from .models import (
    DeploymentPlan,
    DeploymentState,
    Output,
    RetryPolicy,
    RunStatus,
    Stage,
    StageContext,
    StageResult,
    StageStatus,
)
from .runner import StageRunner
from .state_store import StateStore

__all__ = [
    "DeploymentPlan",
    "DeploymentState",
    "Output",
    "RetryPolicy",
    "RunStatus",
    "Stage",
    "StageContext",
    "StageResult",
    "StageStatus",
    "StageRunner",
    "StateStore",
]
