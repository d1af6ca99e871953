"""CLI command handlers."""

from offsync.cli.commands.operations import cmd_cancel, cmd_clear_failed, cmd_failed, cmd_pending, cmd_retry
from offsync.cli.commands.sync import cmd_config, cmd_history, cmd_status, cmd_sync

__all__ = [
    "cmd_cancel",
    "cmd_clear_failed",
    "cmd_config",
    "cmd_failed",
    "cmd_history",
    "cmd_pending",
    "cmd_retry",
    "cmd_status",
    "cmd_sync",
]
