"""Sync, status and configuration commands."""

import json
import logging
from typing import TYPE_CHECKING

from offsync.errors import ConfigurationError

if TYPE_CHECKING:
    from offsync.manager import OfflineManager

logger = logging.getLogger(__name__)


def cmd_status(args, manager: "OfflineManager"):
    """Show connectivity, queue and sync health."""
    status = manager.check_status()
    stats = manager.get_stats()
    health = manager.get_health_status()

    if args.json:
        print(json.dumps(
            {"status": status.to_dict(), "stats": stats.to_dict(), "health": health.to_dict()},
            indent=2,
            default=str,
        ))
        return

    print("Offline Sync Status")
    print("=" * 40)
    print(f"Online:      {'yes' if status.is_online else 'no'} ({status.connection_quality.value})")
    print(f"Pending:     {stats.pending_operations}")
    print(f"Failed:      {len(manager.get_failed_operations())}")
    print(f"Conflicts:   {'yes' if status.has_conflicts else 'no'}")
    last = status.last_sync_time.isoformat(timespec="seconds") if status.last_sync_time else "never"
    print(f"Last sync:   {last}")
    print(f"Storage:     {status.storage_status.value}")
    print(f"Health:      {health.health.value}")
    for issue in health.issues:
        print(f"  ! {issue.message}")
    for rec in health.recommendations:
        print(f"  → {rec}")


def cmd_sync(args, manager: "OfflineManager"):
    """Probe connectivity, then push everything eligible."""
    manager.check_status()
    if args.entity:
        entity_type, _, entity_id = args.entity.partition("/")
        if not entity_id:
            print("✗ --entity must look like TYPE/ID")
            return
        result = manager.sync_entity(entity_type, entity_id)
    else:
        result = manager.manual_sync()

    if args.json:
        print(json.dumps(
            {
                "synced": result.operations_synced,
                "failed": result.operations_failed,
                "retried": result.operations_retried,
                "requeued": result.operations_requeued,
                "conflicts": result.conflict_count,
                "bytes": result.bytes_synced,
                "duration_ms": round(result.duration_ms, 1),
                "errors": result.errors,
            },
            indent=2,
        ))
        return

    if result.skipped:
        print("Another sync is already running.")
        return
    mark = "✓" if result.success else "⚠"
    print(
        f"{mark} Synced {result.operations_synced}, failed {result.operations_failed}, "
        f"retrying {result.operations_retried}, conflicts {result.conflict_count} "
        f"in {result.duration_ms:.0f}ms"
    )
    for error in result.errors[:5]:
        print(f"  {error}")
    if len(result.errors) > 5:
        print(f"  ... and {len(result.errors) - 5} more")


def cmd_history(args, manager: "OfflineManager"):
    """Show recent sync cycles, newest first."""
    entries = manager.get_sync_history(args.limit)
    if args.json:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2, default=str))
        return
    if not entries:
        print("No sync history yet.")
        return
    for entry in entries:
        mark = "✓" if entry.success else "✗"
        print(
            f"{mark} {entry.timestamp.isoformat(timespec='seconds')}  "
            f"synced={entry.operations_synced} failed={entry.operations_failed} "
            f"bytes={entry.bytes_synced} ({entry.duration_ms:.0f}ms)"
        )
        for error in entry.errors[:3]:
            print(f"    {error}")


def _parse_value(raw: str):
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def cmd_config(args, manager: "OfflineManager"):
    """Show configuration, or persist KEY=VALUE overrides."""
    if not args.set:
        print(json.dumps(manager.get_config().public_dict(), indent=2, default=str))
        return

    changes = {}
    for item in args.set:
        key, sep, raw = item.partition("=")
        if not sep:
            print(f"✗ Expected KEY=VALUE, got: {item}")
            return
        changes[key.strip()] = _parse_value(raw)

    try:
        manager.configure(changes)
    except ConfigurationError as e:
        print(f"✗ {e}")
        return
    print(f"✓ Updated {', '.join(sorted(changes))}")
