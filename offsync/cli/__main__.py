"""
offsync CLI - inspect and drive the offline operation queue.

Usage:
    offsync status [--json]
    offsync pending [--json]
    offsync failed [--json]
    offsync retry ID
    offsync cancel ID
    offsync clear-failed [ID]...
    offsync sync [--entity TYPE/ID] [--json]
    offsync history [--limit N] [--json]
    offsync config [--set KEY=VALUE]...
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from offsync.cli.commands import (
    cmd_cancel,
    cmd_clear_failed,
    cmd_config,
    cmd_failed,
    cmd_history,
    cmd_pending,
    cmd_retry,
    cmd_status,
    cmd_sync,
)
from offsync.config import OfflineManagerConfig, get_settings
from offsync.errors import OffsyncError
from offsync.logging_config import setup_offsync_logging
from offsync.manager import OfflineManager

logger = logging.getLogger(__name__)

COMMANDS = {
    "status": cmd_status,
    "pending": cmd_pending,
    "failed": cmd_failed,
    "retry": cmd_retry,
    "cancel": cmd_cancel,
    "clear-failed": cmd_clear_failed,
    "sync": cmd_sync,
    "history": cmd_history,
    "config": cmd_config,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="offsync",
        description="Offline-first operation queue and sync engine",
    )
    parser.add_argument("--data-dir", "-d", type=Path, default=None,
                        help="Data directory (default: $OFFSYNC_DATA_DIR or ~/.offsync)")
    parser.add_argument("--log-level", default="WARNING", help="Log level for the log file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_status = subparsers.add_parser("status", help="Show connectivity, queue and health")
    p_status.add_argument("--json", "-j", action="store_true")

    p_pending = subparsers.add_parser("pending", help="List operations waiting to sync")
    p_pending.add_argument("--json", "-j", action="store_true")

    p_failed = subparsers.add_parser("failed", help="List failed operations")
    p_failed.add_argument("--json", "-j", action="store_true")

    p_retry = subparsers.add_parser("retry", help="Retry a failed operation")
    p_retry.add_argument("id", help="Operation ID")

    p_cancel = subparsers.add_parser("cancel", help="Cancel a pending operation")
    p_cancel.add_argument("id", help="Operation ID")

    p_clear = subparsers.add_parser("clear-failed", help="Remove failed operations")
    p_clear.add_argument("ids", nargs="*", help="Only these operation IDs (default: all)")

    p_sync = subparsers.add_parser("sync", help="Push pending operations now")
    p_sync.add_argument("--entity", "-e", help="Only sync one entity, as TYPE/ID")
    p_sync.add_argument("--json", "-j", action="store_true")

    p_history = subparsers.add_parser("history", help="Show recent sync cycles")
    p_history.add_argument("--limit", "-l", type=int, default=20)
    p_history.add_argument("--json", "-j", action="store_true")

    p_config = subparsers.add_parser("config", help="Show or update configuration")
    p_config.add_argument("--set", "-s", action="append", metavar="KEY=VALUE",
                          help="Persist an override (repeatable, values parsed as JSON)")

    return parser


def load_config(data_dir: Optional[Path]) -> OfflineManagerConfig:
    config = get_settings()
    if data_dir is not None:
        config = config.merged({"data_dir": data_dir.expanduser()})
    return config


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.data_dir)
        setup_offsync_logging(level=args.log_level, data_dir=config.data_dir)
        manager = OfflineManager.create(config)
        manager.initialize(start_background=False)
    except (OffsyncError, OSError) as e:
        print(f"✗ Failed to open offline store: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        COMMANDS[args.command](args, manager)
    except OffsyncError as e:
        logger.error(f"Command {args.command} failed: {e}")
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(1)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        manager.destroy()


if __name__ == "__main__":
    main()
