"""Command-line interface for deploy-guardian."""

from __future__ import annotations

import argparse
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Optional, TypeVar

from .config import load_config
from .errors import CancelledError, GuardianError
from .health import LoginResult, ValidationResult
from .orchestrator import DeploymentRun, DeployOptions, RunOutcome, RunStore
from .utils.logging import get_logger, set_verbosity
from .workflow import GuardianWorkflow

logger = get_logger(__name__)

T = TypeVar("T")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deploy-guardian",
        description="Deploy, verify and recover applications on remote hosts via SSH.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging."
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy_parser = subparsers.add_parser(
        "deploy", help="Sync, restart and validate an environment"
    )
    deploy_parser.add_argument("environment", help="Environment name from the config")
    deploy_parser.add_argument(
        "--reason", default="Manual deployment", help="Reason recorded with the run"
    )
    deploy_parser.add_argument(
        "--force-sync", action="store_true",
        help="Fetch and reset even if the remote is already at the local commit",
    )
    deploy_parser.add_argument(
        "--no-cache", action="store_false", dest="clear_cache",
        help="Keep build caches when restarting",
    )
    deploy_parser.add_argument(
        "--auto-rollback", action="store_true",
        help="Roll back to the previous commit if any phase fails",
    )

    guardian_parser = subparsers.add_parser(
        "guardian", help="Guarded application operations"
    )
    guardian_sub = guardian_parser.add_subparsers(dest="guardian_command", required=True)
    start_parser = guardian_sub.add_parser("start", help="Restart the application and verify health")
    start_parser.add_argument("target", help="Environment name")
    test_parser = guardian_sub.add_parser("test", help="Smoke test an environment (health, then login when configured)")
    test_parser.add_argument("target", help="Environment name")
    guardian_sub.add_parser("status", help="Health of every configured environment")

    health_parser = subparsers.add_parser(
        "health-check", help="Probe an environment's endpoints"
    )
    health_parser.add_argument("target", help="Environment name")

    logs_parser = subparsers.add_parser("logs", help="View deployment run records")
    logs_parser.add_argument(
        "--list", "-l", action="store_true", dest="list_logs",
        help="List all available run records",
    )
    logs_parser.add_argument(
        "--latest", action="store_true", help="Show the latest run record"
    )
    logs_parser.add_argument("--file", "-f", type=str, help="Show a specific run record")

    return parser


def run_cancellable(operation: Callable[[threading.Event], T]) -> T:
    """Run `operation` off the main thread so Ctrl-C becomes a cancellation signal."""
    cancel_event = threading.Event()
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="deploy-guardian")
    future = pool.submit(operation, cancel_event)
    try:
        while not future.done():
            try:
                wait([future], timeout=0.5)
            except KeyboardInterrupt:
                print("\n⏹️  Cancelling, waiting for the current step to stop...")
                cancel_event.set()
        return future.result()
    finally:
        pool.shutdown(wait=False)


# ----- output -----

def print_validation(result: ValidationResult) -> None:
    icon = "✅" if result.healthy else "❌"
    print(
        f"{icon} {result.environment}: {result.healthy_count}/{result.total_count} "
        f"endpoints healthy (threshold {result.threshold:.0%})"
    )
    for endpoint in result.endpoints:
        mark = "✓" if endpoint.healthy else "✗"
        observed = endpoint.status if endpoint.error is None else endpoint.error
        print(f"    {mark} {endpoint.name:<20} {endpoint.url} -> {observed}")


def print_login(result: LoginResult) -> None:
    print(f"✅ {result.environment}: login succeeded at {result.login_url}")
    print(f"    dashboard: {result.dashboard} ({result.dashboard_status})")


def print_run(run: DeploymentRun) -> None:
    status_emoji = {
        RunOutcome.SUCCEEDED: "✅",
        RunOutcome.ROLLED_BACK: "↩️",
        RunOutcome.FAILED: "❌",
        RunOutcome.FATAL: "💥",
        RunOutcome.CANCELLED: "⏹️",
    }.get(run.outcome, "❓")

    print(f"\n{'='*60}")
    print(f"🚀 Deployment to {run.environment}: {run.options.reason}")
    print(f"{'='*60}")
    for entry in run.log:
        prefix = {"warning": "⚠️ ", "error": "❌ "}.get(entry.level, "   ")
        print(f"{prefix}{entry}")
    print(f"{'='*60}")
    print(f"{status_emoji} Status:   {run.outcome.value}")
    if run.duration is not None:
        print(f"⏱️  Duration: {run.duration:.1f}s")
    if run.error:
        print(f"📝 Error:    {run.error}")
    if run.rollback_error:
        print(f"📝 Rollback: {run.rollback_error}")
    print(f"{'='*60}\n")


# ----- commands -----

def handle_deploy_command(args: argparse.Namespace, workflow: GuardianWorkflow) -> int:
    options = DeployOptions(
        reason=args.reason,
        force_sync=args.force_sync,
        clear_cache=args.clear_cache,
        auto_rollback=args.auto_rollback,
    )
    run = run_cancellable(
        lambda cancel: workflow.run_deploy(args.environment, options, cancel)
    )
    print_run(run)
    if run.outcome is RunOutcome.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_OK if run.succeeded else EXIT_FAILURE


def handle_guardian_command(args: argparse.Namespace, workflow: GuardianWorkflow) -> int:
    if args.guardian_command == "status":
        results = run_cancellable(workflow.status)
        if not results:
            print("📁 No environments configured.")
            return EXIT_FAILURE
        for result in results.values():
            print_validation(result)
        return EXIT_OK if all(r.healthy for r in results.values()) else EXIT_FAILURE

    if args.guardian_command == "start":
        result = run_cancellable(lambda cancel: workflow.guarded_start(args.target, cancel))
        print_validation(result)
        return EXIT_OK

    result = run_cancellable(lambda cancel: workflow.guarded_smoke_test(args.target, cancel))
    print_validation(result)
    if workflow.login_test_enabled:
        login = run_cancellable(lambda cancel: workflow.guarded_login_test(args.target, cancel))
        print_login(login)
    return EXIT_OK


def handle_health_check_command(args: argparse.Namespace, workflow: GuardianWorkflow) -> int:
    result = run_cancellable(lambda cancel: workflow.health_check(args.target, cancel))
    print_validation(result)
    return EXIT_OK if result.healthy else EXIT_FAILURE


def handle_logs_command(args: argparse.Namespace, store: Optional[RunStore] = None) -> int:
    """Handle the logs subcommand."""
    store = store or RunStore()
    run_files = store.list()

    if args.list_logs:
        if not run_files:
            print("📁 No deployment runs found.")
            return EXIT_OK
        print(f"📁 Run records in: {store.directory}\n")
        print(f"{'#':<4} {'Status':<14} {'Environment':<16} {'Time':<20} {'File'}")
        print("-" * 90)
        for i, run_file in enumerate(run_files, 1):
            data = store.load(run_file)
            start_time = (data.get("start_time") or "")[:19].replace("T", " ")
            print(
                f"{i:<4} {data.get('status', 'unknown'):<14} "
                f"{data.get('environment', '?'):<16} {start_time:<20} {run_file.name}"
            )
        return EXIT_OK

    if args.file:
        target_file = store.resolve(args.file)
        if target_file is None:
            print(f"❌ Run record not found: {args.file}")
            return EXIT_FAILURE
    else:
        target_file = store.latest()
        if target_file is None:
            print("📁 No deployment runs found. Run a deployment first.")
            return EXIT_OK

    data = store.load(target_file)
    print(f"\n{'='*60}")
    print(f"📄 Run: {target_file.name}")
    print(f"{'='*60}")
    print(f"🖥️  Environment: {data.get('environment', 'N/A')}")
    print(f"📝 Reason:      {data.get('reason', 'N/A')}")
    print(f"⏰ Started:     {data.get('start_time', 'N/A')}")
    print(f"📊 Status:      {data.get('status', 'unknown')}")
    print(f"{'='*60}")
    for entry in data.get("log", []):
        print(f"[{entry.get('phase', '?').upper()}] {entry.get('message', '')}")
    if data.get("error"):
        print(f"\n❌ {data['error']}")
    print()
    return EXIT_OK


def dispatch_command(args: argparse.Namespace) -> int:
    if args.command == "logs":
        return handle_logs_command(args)

    config = load_config(args.config)
    workflow = GuardianWorkflow(config)
    try:
        if args.command == "deploy":
            return handle_deploy_command(args, workflow)
        if args.command == "guardian":
            return handle_guardian_command(args, workflow)
        if args.command == "health-check":
            return handle_health_check_command(args, workflow)
    finally:
        workflow.close()
    raise ValueError(f"Unsupported command: {args.command}")


def run_cli(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    set_verbosity(args.verbose)
    try:
        return dispatch_command(args)
    except CancelledError as exc:
        print(f"⏹️  Cancelled: {exc}")
        return EXIT_CANCELLED
    except KeyboardInterrupt:
        print("\n⏹️  Interrupted")
        return EXIT_CANCELLED
    except (GuardianError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        print(f"❌ {exc}")
        return EXIT_FAILURE
