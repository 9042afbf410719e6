"""
zerup-guard CLI
~~~~~~~~~~~~~~~

Operator recovery commands: list, create and restore restore points,
expire old backups, and inspect the host lock.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import UTC, datetime

from zerup_guard.exceptions import ZerupGuardError

LOG_FORMAT = "[%(levelname)s] %(asctime)s - %(message)s"


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to the zerup-guard YAML config (default: $ZERUP_GUARD_CONFIG "
        "or /etc/zerup/guard.yaml)",
    )
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )

    parser = argparse.ArgumentParser(
        prog="zerup-guard",
        description="zerup-guard: transactional configuration changes for server hardening",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )
    subparsers = parser.add_subparsers(dest="command")

    # version command
    subparsers.add_parser("version", help="Show version")

    # restore-points command group
    rp_parser = subparsers.add_parser(
        "restore-points", help="Manage named restore points"
    )
    rp_sub = rp_parser.add_subparsers(dest="rp_command")

    rp_sub.add_parser("list", parents=[common], help="List restore points, newest first")

    create_parser = rp_sub.add_parser(
        "create", parents=[common], help="Snapshot targets into a new restore point"
    )
    create_parser.add_argument("name", help="Restore point name (e.g. before-caprover)")
    create_parser.add_argument(
        "--description",
        type=str,
        default="",
        help="Free-text description",
    )
    create_parser.add_argument(
        "--target",
        dest="targets",
        action="append",
        required=True,
        metavar="ID:KIND:LOCATOR[:CRITICALITY]",
        help="Target to include (repeatable), e.g. sshd:service:/etc/ssh/sshd_config",
    )

    restore_parser = rp_sub.add_parser(
        "restore", parents=[common], help="Restore every target of a restore point"
    )
    restore_parser.add_argument("point", help="Restore point id or name")

    delete_parser = rp_sub.add_parser(
        "delete", parents=[common], help="Delete a restore point"
    )
    delete_parser.add_argument("point", help="Restore point id or name")

    # cleanup command
    cleanup_parser = subparsers.add_parser(
        "cleanup", parents=[common], help="Expire old backups and restore points"
    )
    cleanup_parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention in days (default: backup.retention_days)",
    )

    # lock command group
    lock_parser = subparsers.add_parser("lock", help="Inspect the host lock")
    lock_sub = lock_parser.add_subparsers(dest="lock_command")
    status_parser = lock_sub.add_parser(
        "status", parents=[common], help="Show the current lock holder"
    )
    status_parser.add_argument(
        "--scope",
        type=str,
        default=None,
        help="Lock scope (default: lock.scope)",
    )

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from zerup_guard import __version__

        print(f"zerup-guard {__version__}")
        return

    handlers = {
        ("restore-points", "list"): _run_rp_list,
        ("restore-points", "create"): _run_rp_create,
        ("restore-points", "restore"): _run_rp_restore,
        ("restore-points", "delete"): _run_rp_delete,
        ("cleanup", None): _run_cleanup,
        ("lock", "status"): _run_lock_status,
    }
    sub = getattr(args, "rp_command", None) or getattr(args, "lock_command", None)
    handler = handlers.get((args.command, sub))
    if handler is None:
        parser.print_help()
        sys.exit(1)

    try:
        guard = _make_guard(args.config, args.verbose)
        ok = handler(guard, args)
    except ZerupGuardError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    if not ok:
        sys.exit(1)


def _make_guard(config_path: str | None, verbose: bool = False):
    """Create a ConfigGuard from config or defaults and set up logging."""
    from zerup_guard.config.loader import find_config
    from zerup_guard.core.engine import ConfigGuard

    path = find_config(config_path)
    guard = ConfigGuard.from_config(path) if path else ConfigGuard.default()
    logging.basicConfig(
        level=logging.DEBUG if verbose else guard.config.logging.level,
        format=LOG_FORMAT,
    )
    return guard


def _parse_target(spec: str):
    """Parse ``ID:KIND:LOCATOR[:CRITICALITY]`` into a Target."""
    from zerup_guard.core.models import Target
    from zerup_guard.core.states import Criticality, TargetKind

    parts = spec.split(":")
    if len(parts) < 3:
        raise ZerupGuardError(f"Invalid --target {spec!r}: expected ID:KIND:LOCATOR")

    criticality = Criticality.ADVISORY
    if len(parts) >= 4 and parts[-1] in {c.value for c in Criticality}:
        criticality = Criticality(parts.pop())
    target_id, kind, locator = parts[0], parts[1], ":".join(parts[2:])
    try:
        target_kind = TargetKind(kind)
    except ValueError:
        raise ZerupGuardError(
            f"Invalid target kind {kind!r}: expected one of "
            f"{', '.join(k.value for k in TargetKind)}"
        ) from None
    return Target(
        id=target_id,
        kind=target_kind,
        locator=locator,
        criticality=criticality,
        must_exist=False,
    )


def _run_rp_list(guard, args: argparse.Namespace) -> bool:
    """Run the restore-points list command."""
    points = guard.restore_points.list()
    if not points:
        print("No restore points found.")
        return True

    print(f"{'ID':<40} {'CREATED':<20} {'BY':<12} DESCRIPTION")
    for point in points:
        created = point.created_at.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S")
        print(f"{point.id:<40} {created:<20} {point.created_by:<12} {point.description}")
    return True


def _run_rp_create(guard, args: argparse.Namespace) -> bool:
    """Run the restore-points create command."""
    targets = [_parse_target(spec) for spec in args.targets]
    try:
        point = guard.restore_points.create(args.name, args.description, targets)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return False
    print(f"Created restore point {point.id} ({len(point.backup_record_ids)} target(s))")
    return True


def _run_rp_restore(guard, args: argparse.Namespace) -> bool:
    """Run the restore-points restore command."""
    report = guard.restore_points.restore(args.point)
    if report.safety_point_id:
        print(f"Safety snapshot: {report.safety_point_id}")
    for target_id in report.restored:
        print(f"  restored  {target_id}")
    for target_id, reason in report.failed.items():
        print(f"  FAILED    {target_id}: {reason}")
    print(
        f"Restored {len(report.restored)} target(s) from {report.restore_point_id}"
        + ("" if report.ok else f", {len(report.failed)} failed")
    )
    return report.ok


def _run_rp_delete(guard, args: argparse.Namespace) -> bool:
    """Run the restore-points delete command."""
    guard.restore_points.delete(args.point)
    print(f"Deleted restore point {args.point}")
    return True


def _run_cleanup(guard, args: argparse.Namespace) -> bool:
    """Run the cleanup command."""
    days = guard.config.backup.retention_days if args.days is None else args.days
    if days < 0:
        print("Error: --days must be >= 0", file=sys.stderr)
        return False
    records = guard.cleanup(days)
    points = guard.restore_points.cleanup(days)
    print(f"Removed {records} backup record(s) and {points} restore point(s) older than {days} day(s)")
    return True


def _run_lock_status(guard, args: argparse.Namespace) -> bool:
    """Run the lock status command."""
    scope = args.scope or guard.config.lock.scope
    info = guard.lock_manager.inspect(scope)
    if info is None:
        print(f"Lock '{scope}' is free")
        return True

    since = (
        datetime.fromtimestamp(info.timestamp, UTC).strftime("%Y-%m-%d %H:%M:%S")
        if info.timestamp is not None
        else "unknown"
    )
    state = "stale" if info.stale else ("held" if info.alive else "unknown holder")
    print(f"Lock '{scope}' {state}: pid={info.pid} since={since} ({info.path})")
    return True


if __name__ == "__main__":
    main()
