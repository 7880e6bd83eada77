"""Command-line interface for cloud-deployer."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .config import AppConfig, load_config
from .errors import PlanValidationError, RunStateError
from .interaction import AutoResponseHandler, CLIInteractionHandler, UserInteractionHandler
from .orchestrator import DeploymentState, RunStatus, StageStatus, StateStore
from .paths import get_logs_dir, get_runs_dir
from .utils.logging import add_file_handler, configure_logging, remove_handler
from .workflow import DeploymentRequest, DeploymentWorkflow

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


@dataclass
class CLIContext:
    """Context captured from CLI arguments."""

    config: AppConfig
    store: StateStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloud-deployer",
        description="Provision cloud infrastructure and roll out the application stack onto it.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument(
        "--state-dir",
        type=str,
        default=None,
        help="Directory holding persisted run state.",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, ...)")

    subparsers = parser.add_subparsers(dest="command", required=True)
    deploy_parser = subparsers.add_parser("deploy", help="Provision and deploy (or resume a run)")
    deploy_parser.add_argument("--project-id", required=True, help="Cloud project id")
    deploy_parser.add_argument("--region", required=True, help="Cloud region")
    deploy_parser.add_argument("--zone", required=True, help="Cloud zone")
    deploy_parser.add_argument("--domain", default=None, help="Public domain; enables TLS")
    deploy_parser.add_argument("--admin-email", default=None, help="Contact email for the certificate")
    deploy_parser.add_argument("--version", default="latest", help="Application image tag; a new tag with --resume updates the deployment")
    deploy_parser.add_argument("--run-id", default=None, help="Run id (default: project id)")
    deploy_parser.add_argument(
        "--resume", action="store_true",
        help="Continue a previous run from its persisted state",
    )
    deploy_parser.add_argument(
        "--force", action="append", default=[], metavar="STAGE",
        help="Re-run STAGE even if it already succeeded (repeatable)",
    )
    deploy_parser.add_argument(
        "--allow-dns-override", action="store_true",
        help="Issue the certificate even when DNS does not point at the deployment",
    )
    deploy_parser.add_argument("--max-workers", type=int, default=None, help="Concurrent stage limit")
    deploy_parser.add_argument("--ssh-user", default=None, help="SSH username on the instance")
    deploy_parser.add_argument("--ssh-key", default=None, help="Path to SSH private key")

    # status 子命令 - 查看运行状态
    status_parser = subparsers.add_parser("status", help="Show the state of a run")
    status_parser.add_argument("--run-id", default=None, help="Run id (default: most recent run)")

    subparsers.add_parser("runs", help="List persisted runs")

    purge_parser = subparsers.add_parser("purge", help="Delete the persisted state of a run")
    purge_parser.add_argument("--run-id", required=True, help="Run id to purge")

    return parser


def _build_context(args: argparse.Namespace) -> CLIContext:
    config = load_config(args.config)
    if args.state_dir:
        config.runner.state_dir = args.state_dir
    if args.log_level:
        config.runner.log_level = args.log_level
    configure_logging(config.runner.log_level)
    return CLIContext(config=config, store=StateStore(get_runs_dir(config.runner.state_dir)))


def _interaction_handler() -> UserInteractionHandler:
    # 非交互环境下不自动确认
    if sys.stdin is not None and sys.stdin.isatty():
        return CLIInteractionHandler()
    return AutoResponseHandler(always_confirm=False)


def print_failure(state: DeploymentState, store: StateStore, log_path: Optional[Path] = None) -> None:
    """Print the failure summary of a terminal run to stderr."""
    path = store.path_for(state.run_id)
    err = sys.stderr
    if state.status == RunStatus.HALTED:
        deferred = state.deferred_stages()
        for name, reason in deferred.items():
            print(f"⏸️  Run {state.run_id} halted at stage '{name}': {reason}", file=err)
        if not deferred:
            print(f"⏸️  Run {state.run_id} halted before every stage succeeded", file=err)
        print(f"   Resume with: cloud-deployer deploy ... --run-id {state.run_id} --resume", file=err)
    else:
        name = state.failed_stage
        result = state.results.get(name) if name else None
        print(f"❌ Run {state.run_id} {state.status.value}", file=err)
        if result is not None:
            print(f"   Stage:      {name}", file=err)
            print(f"   Attempts:   {result.attempts}", file=err)
            kind = result.error_kind.value if result.error_kind else "unknown"
            print(f"   Last error: [{kind}] {result.last_error}", file=err)
        rollback_errors = {
            stage: res.rollback_error for stage, res in state.results.items() if res.rollback_error
        }
        for stage, message in rollback_errors.items():
            print(f"   Rollback of {stage} failed: {message}", file=err)
    print(f"   State file: {path}", file=err)
    if log_path is not None:
        print(f"   Run log:    {log_path}", file=err)


def print_state(state: DeploymentState) -> None:
    status_emoji = {
        RunStatus.SUCCEEDED: "✅",
        RunStatus.FAILED: "❌",
        RunStatus.RUNNING: "🔄",
        RunStatus.HALTED: "⏸️",
        RunStatus.CANCELLED: "🛑",
    }
    stage_emoji = {
        StageStatus.SUCCEEDED: "✅",
        StageStatus.FAILED: "❌",
        StageStatus.RUNNING: "🔄",
        StageStatus.PENDING: "⏳",
        StageStatus.ROLLED_BACK: "↩️",
    }
    print(f"\n{'=' * 60}")
    print(f"{status_emoji.get(state.status, '❓')} Run {state.run_id}: {state.status.value}")
    print(f"   Updated: {state.updated_at[:19].replace('T', ' ')}")
    print(f"{'=' * 60}")
    print(f"{'Stage':<16} {'Status':<14} {'Attempts':<9} Note")
    print("-" * 60)
    for name, result in state.results.items():
        note = result.deferred_reason or result.last_error or ""
        if result.rollback_error:
            note = f"rollback failed: {result.rollback_error}"
        icon = stage_emoji.get(result.status, "•")
        print(f"{name:<16} {icon} {result.status.value:<11} {result.attempts:<9} {note[:60]}")

    visible = {
        key: ("<redacted>" if output.sensitive or output.redacted else output.value)
        for key, output in state.outputs.items()
    }
    if visible:
        print("\nOutputs:")
        for key, value in sorted(visible.items()):
            print(f"   {key} = {value}")


def handle_deploy_command(args: argparse.Namespace, context: CLIContext) -> int:
    config = context.config
    if args.allow_dns_override:
        config.certificate.allow_dns_override = True
    if args.max_workers is not None:
        if args.max_workers < 1:
            print("❌ --max-workers must be at least 1", file=sys.stderr)
            return EXIT_USAGE
        config.runner.max_workers = args.max_workers

    request = DeploymentRequest(
        project_id=args.project_id,
        region=args.region,
        zone=args.zone,
        domain=args.domain,
        admin_email=args.admin_email,
        version=args.version,
        run_id=args.run_id,
        ssh_user=args.ssh_user,
        ssh_key=args.ssh_key,
    )
    workflow = DeploymentWorkflow(config, _interaction_handler(), store=context.store)
    log_handler = None
    log_path = None
    try:
        request.validate()
        context.store.path_for(request.effective_run_id)
        log_path = get_logs_dir(config.runner.state_dir) / f"{request.effective_run_id}.log"
        log_handler = add_file_handler(log_path)
        state = workflow.run(request, resume=args.resume, force=args.force)
    except (ValueError, RunStateError, PlanValidationError) as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return EXIT_USAGE
    finally:
        if log_handler is not None:
            remove_handler(log_handler)

    if state.status == RunStatus.SUCCEEDED:
        endpoint = state.outputs.get("endpoint")
        print(f"🎉 Deployment {state.run_id} succeeded")
        if endpoint is not None:
            print(f"   Endpoint: {endpoint.value}")
        return EXIT_OK
    print_failure(state, context.store, log_path)
    return EXIT_FAILED


def handle_status_command(args: argparse.Namespace, context: CLIContext) -> int:
    run_id = args.run_id
    if run_id is None:
        runs = context.store.list_runs()
        if not runs:
            print("📁 No runs found. Run a deployment first.")
            return EXIT_OK
        run_id = runs[0]["run_id"]
    try:
        state = context.store.load(run_id)
    except RunStateError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return EXIT_USAGE
    print_state(state)
    return EXIT_OK if state.status in (RunStatus.SUCCEEDED, RunStatus.RUNNING) else EXIT_FAILED


def handle_runs_command(context: CLIContext) -> int:
    runs = context.store.list_runs()
    if not runs:
        print("📁 No runs found.")
        return EXIT_OK
    print(f"📁 Runs in: {context.store.root}\n")
    print(f"{'Run':<30} {'Status':<12} {'Updated':<20} Failed stage")
    print("-" * 80)
    for run in runs:
        updated = (run.get("updated_at") or "")[:19].replace("T", " ")
        print(f"{run['run_id']:<30} {str(run.get('status')):<12} {updated:<20} {run.get('failed_stage') or ''}")
    return EXIT_OK


def handle_purge_command(args: argparse.Namespace, context: CLIContext) -> int:
    try:
        removed = context.store.purge(args.run_id)
    except RunStateError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return EXIT_USAGE
    if not removed:
        print(f"❌ No persisted state for run '{args.run_id}'", file=sys.stderr)
        return EXIT_FAILED
    print(f"🗑️  Purged run {args.run_id}")
    return EXIT_OK


def dispatch_command(args: argparse.Namespace) -> int:
    try:
        context = _build_context(args)
    except FileNotFoundError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "deploy":
        return handle_deploy_command(args, context)
    if args.command == "status":
        return handle_status_command(args, context)
    if args.command == "runs":
        return handle_runs_command(context)
    if args.command == "purge":
        return handle_purge_command(args, context)

    raise ValueError(f"Unsupported command: {args.command}")


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # argparse 的用法错误为 2，--help 为 0
        return exc.code if isinstance(exc.code, int) else EXIT_USAGE
    return dispatch_command(args)
