"""
Sync projects, WBS and resource assignments between Primavera P6 and Oracle EBS.

Usage:
    # EBS -> P6
    python p6ebs_sync.py project EBS1001
    python p6ebs_sync.py tasks EBS1001
    python p6ebs_sync.py all --tasks

    # P6 -> EBS
    python p6ebs_sync.py wbs EBS1002
    python p6ebs_sync.py resources

    # Connectivity and the sync operation log
    python p6ebs_sync.py health
    python p6ebs_sync.py history

    # Without live systems, against built-in data
    python p6ebs_sync.py --fixture tasks EBS1001
"""

import argparse
import json
import os

from engine import SyncEngine
from patterns import Patterns
from results import SyncResult
from utils import CONFIG_FILE, SYNC_LOG_FILE, load_config, load_config_safe, setup_logging

# ============================================================================
# Output
# ============================================================================


def _label(key: dict) -> str:
    return ", ".join(f"{k}={v}" for k, v in key.items())


def print_result(result: SyncResult) -> None:
    """Console narrative for one sync call."""
    if result.results is not None and result.results.items:
        print()
        for item in result.results.items:
            if not item.success:
                print(f"    [!] {_label(item.key)}: FAILED ({item.error})")
            elif item.action == "skipped":
                print(f"    [*] {_label(item.key)}: skipped ({item.detail.get('reason')})")
            elif item.target_id:
                print(f"    [+] {_label(item.key)}: {item.action} -> {item.target_id}")
            else:
                print(f"    [+] {_label(item.key)}: {item.action}")
        print()

    if result.success:
        print(f"[+] {result.message}")
        if result.results is not None and result.results.failed:
            print(f"[!] {result.results.failed} item(s) failed, see above")
    else:
        print(f"[!] {result.message}")
        print(f"    Stopped at stage: {result.extra.get('failedStage', result.stage.value)}")


def print_health(health: dict) -> None:
    for system in ("p6", "ebs"):
        mark = "[+]" if health[system] == "connected" else "[!]"
        print(f"{mark} {system.upper()}: {health[system]}")
    print(f"    Checked at {health['timestamp']}")


def print_history(engine: SyncEngine, limit: int) -> None:
    operations = engine.sync_log.recent(limit)
    if not operations:
        print("[*] No sync operations recorded yet.")
        return
    print(f"[*] Last {len(operations)} sync operation(s):")
    print()
    for op in operations:
        print(f"    {op.started_at} | {op.status:<11} | {op.type} ({op.source})")
        if op.details:
            print(f"        {op.details}")


# ============================================================================
# CLI
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sync projects, WBS and resource assignments between P6 and EBS",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Create or update the P6 project for an EBS project
    python p6ebs_sync.py project EBS1001

    # All approved/active projects including their task trees
    python p6ebs_sync.py all --tasks

    # Try it without live systems
    python p6ebs_sync.py --fixture all --tasks
        """,
    )
    parser.add_argument("--config", default=CONFIG_FILE, help=f"Config file (default: {CONFIG_FILE})")
    parser.add_argument("--fixture", action="store_true", help="Use built-in fixture data instead of the live APIs")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    commands = parser.add_subparsers(dest="command", required=True)

    cmd = commands.add_parser("project", help="EBS project -> P6 project")
    cmd.add_argument("project_id", help="EBS project id (e.g., EBS1001)")

    cmd = commands.add_parser("tasks", help="EBS tasks -> P6 WBS")
    cmd.add_argument("project_id", help="EBS project id (e.g., EBS1001)")

    cmd = commands.add_parser("wbs", help="P6 WBS progress -> EBS tasks")
    cmd.add_argument("project_id", help="P6 project id (e.g., EBS1002)")

    commands.add_parser("resources", help="P6 resource assignments -> EBS")

    cmd = commands.add_parser("all", help="All approved/active EBS projects -> P6")
    cmd.add_argument("--tasks", action="store_true", help="Also sync the task tree of every project")

    commands.add_parser("health", help="Check connectivity to P6 and EBS")

    cmd = commands.add_parser("history", help="Show recent sync operations")
    cmd.add_argument("--limit", type=int, default=10, help="Number of operations to show (default: 10)")

    return parser


def load_settings(args) -> dict | None:
    """Config for this run; --fixture works without a config file."""
    if args.fixture:
        config = load_config(args.config) if os.path.exists(args.config) else {}
        config["backend"] = "fixture"
    else:
        config = load_config_safe(args.config)
        if config is None:
            return None
    config.setdefault("sync", {}).setdefault("log_file", SYNC_LOG_FILE)
    return config


def main():
    parser = build_parser()
    args = parser.parse_args()

    project_id = getattr(args, "project_id", None)
    if project_id is not None and not Patterns.ENTITY_ID.match(project_id):
        print(f"Error: Invalid project id '{project_id}'. Expected letters, digits, '-', '_' or '.'")
        return 1

    setup_logging(args.verbose)

    config = load_settings(args)
    if config is None:
        return 1

    try:
        engine = SyncEngine.from_config(config)
    except json.JSONDecodeError as e:
        log_file = config["sync"]["log_file"]
        print(f"[!] ERROR: {log_file} is not valid JSON!")
        print(f"    Line {e.lineno}, column {e.colno}: {e.msg}")
        print()
        print("    Repair the file or delete it to start a fresh sync history.")
        return 1

    if args.command == "history":
        print_history(engine, args.limit)
        return 0

    if args.command == "health":
        health = engine.check_health()
        if args.json:
            print(json.dumps(health, indent=2))
        else:
            print_health(health)
        return 0 if all(health[s] == "connected" for s in ("p6", "ebs")) else 1

    if not args.json:
        print()
        print("=" * 70)
        print(f"P6 <-> EBS SYNC | {args.command} | Backend: {config.get('backend', 'live')}")
        print("=" * 70)
        print()

    if args.command == "project":
        result = engine.sync_project(project_id)
    elif args.command == "tasks":
        result = engine.sync_tasks(project_id)
    elif args.command == "wbs":
        result = engine.sync_wbs_to_tasks(project_id)
    elif args.command == "resources":
        result = engine.sync_resource_assignments()
    else:
        result = engine.sync_all_projects(sync_tasks=args.tasks)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print_result(result)

    return 0 if result.success else 1


if __name__ == "__main__":
    exit(main())
