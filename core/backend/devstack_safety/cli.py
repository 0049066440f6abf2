"""
CLI Entry Point for Devstack Safety

Operator commands for inspecting backups, the audit trail and operation
history left behind by the setup wizard's tool managers.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import SafetyContext
from .errors import ConfigError
from .models import TERMINAL_EVENTS, AuditEvent
from .safety import SafetyFramework


console = Console()

EVENT_STYLES = {
    AuditEvent.ACTION_SUCCEEDED: "green",
    AuditEvent.ACTION_FAILED: "red",
    AuditEvent.BACKUP_FAILED: "red",
    AuditEvent.ROLLBACK_PARTIAL: "bold red",
    AuditEvent.ROLLBACK_DONE: "yellow",
    AuditEvent.ROLLBACK_STARTED: "yellow",
}

STATUS_STYLES = {
    "SUCCEEDED": "green",
    "FAILED": "red",
    "ROLLED_BACK": "yellow",
    "ROLLBACK_PARTIAL": "bold red",
}


def setup_logging(verbose: bool = False):
    """
    Configure logging with rich output.

    Args:
        verbose: Enable verbose logging (DEBUG level)
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)]
    )


def create_parser() -> argparse.ArgumentParser:
    """
    Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="devstack-safety",
        description=(
            "Devstack Safety - inspect backups and the audit trail of setup operations. "
            "Rollback is best-effort file restoration, not an atomic transaction."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List snapshot sets
  devstack-safety backups

  # Show the audit trail for one operation
  devstack-safety audit --key redis-config

  # Apply the retention policy, keeping the 5 newest sets
  devstack-safety prune --keep 5

  # Check a snapshot set against its checksums
  devstack-safety verify ~/.devstack-setup/backups/redis-config-20260101-120000-000000
"""
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"devstack-safety {__version__}"
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration YAML"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("backups", help="List snapshot sets")

    audit_parser = subparsers.add_parser("audit", help="Show audit trail entries")
    audit_parser.add_argument("--key", help="Only show entries for this operation key")

    subparsers.add_parser("operations", help="Show archived operations")
    subparsers.add_parser("report", help="Generate the safety report")

    prune_parser = subparsers.add_parser("prune", help="Apply the backup retention policy")
    prune_parser.add_argument("--keep", type=int, default=None, help="Snapshot sets to keep")
    prune_parser.add_argument("--max-age-days", type=int, default=None, help="Maximum age in days")

    verify_parser = subparsers.add_parser("verify", help="Verify a snapshot set")
    verify_parser.add_argument("snapshot_dir", type=Path, help="Snapshot set directory")

    return parser


def show_backups(framework: SafetyFramework) -> int:
    backups = framework.backup_manager.list_backups()

    if not backups:
        console.print("[yellow]No backups found[/yellow]")
        return 0

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Snapshot", style="cyan")
    table.add_column("Operation", style="white")
    table.add_column("Created", style="green")
    table.add_column("Paths", style="white")
    table.add_column("Size", style="yellow")
    table.add_column("State", style="white")

    for backup in backups:
        size_kb = backup["size"] / 1024
        if backup["in_flight"]:
            state = "[bold yellow]in flight[/bold yellow]"
        elif backup["complete"]:
            state = "complete"
        else:
            state = "[dim]incomplete[/dim]"
        table.add_row(
            backup["name"],
            backup["operation_key"] or "[dim]-[/dim]",
            backup["created"].strftime("%Y-%m-%d %H:%M:%S"),
            str(backup["record_count"]),
            f"{size_kb:.1f} KB",
            state,
        )

    console.print(f"\n[bold]Available Backups ({len(backups)} total):[/bold]\n")
    console.print(table)
    console.print()
    return 0


def show_audit(framework: SafetyFramework, key: Optional[str]) -> int:
    entries = framework.audit.read(operation_key=key)

    if not entries:
        console.print("[yellow]No audit entries found[/yellow]")
        return 0

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Time", style="green")
    table.add_column("Operation", style="cyan")
    table.add_column("Event", style="white")
    table.add_column("Detail", style="white")

    for entry in entries:
        style = EVENT_STYLES.get(entry.event, "white")
        detail = entry.detail.get("error") or ", ".join(entry.detail.get("paths", []))
        event = entry.event.value
        if entry.event in TERMINAL_EVENTS:
            event = f"{event} ■"
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            escape(entry.operation_key),
            f"[{style}]{event}[/{style}]",
            escape(str(detail))
        )

    console.print(table)
    return 0


def show_operations(framework: SafetyFramework) -> int:
    operations = framework.list_operations()

    if not operations:
        console.print("[yellow]No operations recorded[/yellow]")
        return 0

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Operation", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Started", style="green")
    table.add_column("Error", style="white")

    for operation in operations:
        status = operation.get("status", "UNKNOWN")
        style = STATUS_STYLES.get(status, "white")
        error = operation.get("error") or {}
        table.add_row(
            escape(operation.get("key", "N/A")),
            f"[{style}]{status}[/{style}]",
            operation.get("started_at", ""),
            escape(error.get("message", ""))
        )

    console.print(table)
    return 0


def show_report(framework: SafetyFramework) -> int:
    report = framework.generate_safety_report()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    for name, value in report["metrics"].items():
        table.add_row(name, str(value))
    table.add_row("backup sets", str(report["backups"]["count"]))
    table.add_row("backup size", f"{report['backups']['size_bytes'] / 1024:.1f} KB")

    console.print(table)
    for rec in report["recommendations"]:
        console.print(f"  • {rec['priority'].upper()}: {escape(rec['message'])}")
    console.print(f"\nReport written to [cyan]{framework.context.report_path}[/cyan]")
    return 0


def prune_backups(framework: SafetyFramework, keep: Optional[int], max_age_days: Optional[int]) -> int:
    config = framework.context.config
    deleted = framework.backup_manager.cleanup_old_backups(
        keep_count=keep if keep is not None else config.backup_keep_count,
        max_age_days=max_age_days if max_age_days is not None else config.backup_max_age_days,
        protected=framework.registry.in_flight(),
    )
    console.print(f"[bold green]✓[/bold green] Removed {deleted} snapshot set(s)")
    return 0


def verify_snapshot(framework: SafetyFramework, snapshot_dir: Path) -> int:
    try:
        records = framework.backup_manager.records_for(snapshot_dir)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1

    failures = 0
    for record in records:
        if framework.backup_manager.verify_backup(record):
            console.print(f"[green]✓[/green] {record.path}")
        else:
            console.print(f"[red]✗[/red] {record.path}")
            failures += 1

    if failures:
        console.print(f"\n[bold red]✗ {failures} snapshot(s) failed verification[/bold red]")
        return 1

    console.print("\n[bold green]✓ Snapshot set intact[/bold green]")
    return 0


def execute_command(args) -> int:
    """
    Execute selected command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        context = SafetyContext.from_config_file(args.config)
        framework = SafetyFramework(context)

        if args.command == "backups":
            return show_backups(framework)
        elif args.command == "audit":
            return show_audit(framework, args.key)
        elif args.command == "operations":
            return show_operations(framework)
        elif args.command == "report":
            return show_report(framework)
        elif args.command == "prune":
            return prune_backups(framework, args.keep, args.max_age_days)
        elif args.command == "verify":
            return verify_snapshot(framework, args.snapshot_dir)

        console.print(f"[bold red]Error:[/bold red] Unknown command: {args.command}")
        return 1

    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        return 130

    except (ConfigError, FileNotFoundError) as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        return 2

    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if args.verbose:
            console.print_exception()
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    return execute_command(args)


if __name__ == "__main__":
    sys.exit(main())
