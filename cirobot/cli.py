"""
CI Robot CLI - Command-line interface and argument parsing.

Installed as the `cirobot` command:
    cirobot workflow.yaml --project /path/Game.uproject
    cirobot --validate workflow.yaml
    cirobot --runs
    cirobot --serve
"""
import argparse
import asyncio
import json
import os
import sys

from rich.console import Console
from rich.table import Table

from cirobot.artifacts import ArtifactStore
from cirobot.config import ConfigLoader, load_daemon_config
from cirobot.log import get_console, get_logger
from cirobot.triage import CrashTriager, format_crash_report

logger = get_logger(__name__)

STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "in_progress": "yellow",
}


def main(argv=None):
    """Entry point for the `cirobot` CLI command."""

    from cirobot import __version__
    parser = argparse.ArgumentParser(description='CI Robot - autonomous build/test orchestrator')
    parser.add_argument('--version', '-V', action='version', version=f'cirobot {__version__}')
    parser.add_argument('workflow', nargs='?', help='Path to workflow YAML file to run')
    parser.add_argument('--validate', metavar='FILE', help='Validate a workflow file without running it')
    parser.add_argument('--runs', action='store_true', help='List recorded runs')
    parser.add_argument('--run-info', metavar='RUN_ID', help='Show metadata and artifacts of a run')
    parser.add_argument('--triage', metavar='DIR', help='Triage a crash directory')
    parser.add_argument('--cleanup', metavar='DAYS', type=float, help='Delete runs older than DAYS')
    parser.add_argument('--capabilities', action='store_true', help='Show daemon capabilities')
    parser.add_argument('--serve', action='store_true',
                        help='Run the daemon with the report server until interrupted')
    parser.add_argument('--config', metavar='FILE', help='Daemon config YAML')
    parser.add_argument('--project', metavar='UPROJECT', help='Path to the .uproject file')
    parser.add_argument('--engine', metavar='DIR', help='Engine root directory')
    parser.add_argument('--artifact-dir', metavar='DIR', help='Artifact directory (default: <project>/.mcp-artifacts)')
    parser.add_argument('--json', action='store_true', help='Machine-readable JSON output')

    args = parser.parse_args(argv)

    if args.validate:
        sys.exit(_handle_validate(args))

    if args.triage:
        sys.exit(_handle_triage(args))

    try:
        config = load_daemon_config(args.config, overrides={
            "project_path": args.project,
            "engine_path": args.engine,
            "artifact_dir": args.artifact_dir,
        })
    except (OSError, ValueError) as e:
        print(f"[ERROR] Could not load config: {e}")
        sys.exit(1)

    if args.runs:
        sys.exit(_handle_runs(args, config))
    if args.run_info:
        sys.exit(_handle_run_info(args, config))
    if args.cleanup is not None:
        sys.exit(_handle_cleanup(args, config))
    if args.capabilities:
        sys.exit(_handle_capabilities(args, config))
    if args.serve:
        from cirobot.daemon import run_daemon
        run_daemon(config)
        sys.exit(0)

    if not args.workflow:
        print("[ERROR] Provide a workflow file or one of --validate/--runs/--run-info/--triage/--serve")
        parser.print_help()
        sys.exit(1)

    sys.exit(_handle_workflow(args, config))


def _emit_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _handle_validate(args) -> int:
    from models import ValidationEngine
    result = ValidationEngine().validate_workflow(args.validate)
    if args.json:
        _emit_json({
            "valid": result.is_valid,
            "errors": [{"field": e.field, "message": e.message} for e in result.errors],
            "warnings": [{"field": w.field, "message": w.message} for w in result.warnings],
            "metadata": result.metadata,
        })
    else:
        print(result.format_report())
    return 0 if result.is_valid else 1


def _handle_triage(args) -> int:
    if not os.path.isdir(args.triage):
        print(f"[ERROR] Crash directory not found: {args.triage}")
        return 1
    report = CrashTriager(args.triage).triage()
    if args.json:
        _emit_json(report.to_dict())
    else:
        print(format_crash_report(report))
    return 0


def _handle_runs(args, config) -> int:
    runs = ArtifactStore(config.resolved_artifact_dir()).list_runs()
    if args.json:
        _emit_json({"runs": runs})
        return 0
    if not runs:
        print("[RUNS] No runs recorded")
        return 0

    table = Table(title="CI Robot Runs", show_header=True)
    table.add_column("Run ID", style="cyan")
    table.add_column("Created")
    table.add_column("Status")
    for run in runs:
        status = run["status"]
        style = STATUS_STYLES.get(status, "dim")
        table.add_row(run["runId"], run["createdAt"], f"[{style}]{status}[/{style}]")
    Console().print(table)
    return 0


def _handle_run_info(args, config) -> int:
    store = ArtifactStore(config.resolved_artifact_dir())
    run_id = args.run_info
    if not store.has_run(run_id):
        print(f"[ERROR] Run not found: {run_id}")
        return 1

    metadata = store.get_metadata(run_id) or {}
    artifacts = store.get_run(run_id).list_artifacts()
    if args.json:
        _emit_json({"runId": run_id, "metadata": metadata, "artifacts": [a.to_dict() for a in artifacts]})
        return 0

    print(f"\n[RUN] ID: {run_id}")
    print(f"[RUN] Created: {metadata.get('createdAt', 'unknown')}")
    print(f"[RUN] Status: {metadata.get('status', 'unknown')}")
    print(f"\n[ARTIFACTS] {len(artifacts)} files:")
    for artifact in artifacts:
        print(f"  - {artifact.path} ({artifact.size} bytes)")
    print()
    return 0


def _handle_cleanup(args, config) -> int:
    removed = ArtifactStore(config.resolved_artifact_dir()).cleanup(args.cleanup)
    if args.json:
        _emit_json({"removed": removed})
    else:
        print(f"[CLEANUP] Removed {removed} run(s) older than {args.cleanup:g} days")
    return 0


def _build_daemon(config):
    from cirobot.daemon import RobotDaemon
    try:
        return RobotDaemon(config)
    except ValueError as e:
        print(f"[ERROR] Invalid daemon configuration: {e}")
        return None


def _handle_capabilities(args, config) -> int:
    daemon = _build_daemon(config)
    if daemon is None:
        return 1
    caps = daemon.get_capabilities()
    if args.json:
        _emit_json(caps)
        return 0
    for key, value in caps.items():
        print(f"[CAPS] {key}: {json.dumps(value)}")
    return 0


def _handle_workflow(args, config) -> int:
    from models import ValidationEngine

    if not os.path.isfile(args.workflow):
        print(f"[ERROR] Workflow file not found: {args.workflow}")
        return 1

    validation = ValidationEngine().validate_workflow(args.workflow)
    if not validation.is_valid:
        print(validation.format_report())
        return 1
    for warning in validation.warnings:
        print(f"[WARN] {warning.field}: {warning.message}")

    loader = ConfigLoader(logger.debug)
    loader.load_env_file(os.path.dirname(os.path.abspath(args.workflow)))
    data = loader.load_workflow(args.workflow)

    # a one-shot run has no use for the report server
    config.enable_report_server = False
    daemon = _build_daemon(config)
    if daemon is None:
        return 1

    try:
        result = asyncio.run(daemon.run_workflow(data))
    except KeyboardInterrupt:
        print("\n[SHUTDOWN] Interrupted")
        return 130

    if args.json:
        _emit_json(result.to_dict())
    else:
        _print_result(result)
    return 0 if result.success else 1


def _print_result(result) -> None:
    console = get_console()
    console.info("")
    console.info("%s %s", "[OK]" if result.success else "[FAILED]", result.summary)
    console.info("[RUN] ID: %s", result.run_id)
    console.info("[RUN] Duration: %dms", result.duration)
    for phase in result.phases:
        console.info("  [%s] %s (%dms)", "+" if phase.success else "x", phase.name, phase.duration)
        for step in phase.steps:
            first_line = step.error.strip().splitlines()[0] if step.error and step.error.strip() else ""
            console.info("      %s/%s: %s%s", step.type, step.action,
                         "ok" if step.success else "failed", f" - {first_line}" if first_line else "")
    console.info("[ARTIFACTS] %d files", len(result.artifacts))


if __name__ == '__main__':
    main()
