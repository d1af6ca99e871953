"""Queue inspection and maintenance commands."""

import json
from typing import TYPE_CHECKING, List

from offsync.types import Operation

if TYPE_CHECKING:
    from offsync.manager import OfflineManager


def _format_operation(op: Operation) -> str:
    line = (
        f"  [{op.id[:8]}] {op.kind.value:<6} {op.entity_type}/{op.entity_id} "
        f"({op.priority.value}, {op.status.value}"
    )
    if op.retry_count:
        line += f", retries={op.retry_count}/{op.max_retries}"
    line += ")"
    if op.awaiting_resolution:
        line += " - awaiting conflict resolution"
    if op.error:
        line += f"\n      error: {op.error}"
    return line


def _print_operations(ops: List[Operation], title: str, as_json: bool) -> None:
    if as_json:
        print(json.dumps([op.to_dict() for op in ops], indent=2, default=str))
        return
    if not ops:
        print(f"No {title.lower()}.")
        return
    print(f"{title} ({len(ops)}):")
    print("-" * 50)
    for op in ops:
        print(_format_operation(op))


def cmd_pending(args, manager: "OfflineManager"):
    """List operations waiting to sync."""
    _print_operations(manager.get_pending_operations(), "Pending operations", args.json)


def cmd_failed(args, manager: "OfflineManager"):
    """List operations that exhausted their retries or were rejected."""
    _print_operations(manager.get_failed_operations(), "Failed operations", args.json)


def cmd_retry(args, manager: "OfflineManager"):
    """Move a failed operation back to pending."""
    op = manager.retry_operation(args.id)
    print(f"✓ Operation {op.id} is pending again")


def cmd_cancel(args, manager: "OfflineManager"):
    """Cancel a pending or in-flight operation."""
    op = manager.cancel_operation(args.id)
    if op.cancel_requested:
        print(f"✓ Cancellation requested for {op.id} (in flight)")
    else:
        print(f"✓ Operation {op.id} cancelled")


def cmd_clear_failed(args, manager: "OfflineManager"):
    """Remove failed operations."""
    count = manager.clear_failed_operations(args.ids or None)
    print(f"✓ Removed {count} failed operation(s)")
