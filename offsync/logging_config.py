"""File logging for offsync.

Writes engine logs to ``<data_dir>/logs/local-{date}.log`` and a separate
append-only sync event trail to ``<data_dir>/logs/sync-events-{date}.log``.
``OFFSYNC_DATA_DIR`` overrides the data directory when none is passed.
"""

import logging
import os
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Union

from offsync.config import default_data_dir

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

PathLike = Union[str, Path]


def get_log_dir(data_dir: Optional[PathLike] = None) -> Path:
    if data_dir is None:
        env_dir = os.environ.get("OFFSYNC_DATA_DIR")
        base = Path(env_dir).expanduser() if env_dir else default_data_dir()
    else:
        base = Path(data_dir).expanduser()
    log_dir = base / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def setup_offsync_logging(
    namespace: str = "default",
    level: str = "INFO",
    data_dir: Optional[PathLike] = None,
) -> logging.Logger:
    """Configure the ``offsync`` logger with a dated file handler.

    Args:
        namespace: Name of the client namespace, recorded in the first log line.
        level: Log level name. Unknown names fall back to INFO. DEBUG also
            logs to the console.
        data_dir: Data directory holding ``logs/``.

    Returns:
        The configured ``offsync`` logger. Calling this again reuses the
        existing file handler.
    """
    logger = logging.getLogger("offsync")
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    log_dir = get_log_dir(data_dir)
    log_file = log_dir / f"local-{date.today().isoformat()}.log"

    has_file_handler = any(isinstance(h, logging.FileHandler) for h in logger.handlers)
    if not has_file_handler:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)
        logger.debug(f"Logging started for namespace={namespace}")

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if resolved == logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console)

    return logger


def log_sync_event(
    event_type: str,
    details: str,
    namespace: str = "default",
    data_dir: Optional[PathLike] = None,
) -> None:
    """Append one line to the day's sync event trail."""
    log_file = get_log_dir(data_dir) / f"sync-events-{date.today().isoformat()}.log"
    timestamp = datetime.now().isoformat(timespec="seconds")
    with open(log_file, "a", encoding="utf-8") as f:
        f.write(f"{timestamp} | {event_type} | ns={namespace} | {details}\n")


def log_sync_cycle(
    namespace: str,
    synced: int,
    failed: int,
    conflicts: int,
    duration_ms: float,
    error: Optional[str] = None,
    data_dir: Optional[PathLike] = None,
) -> None:
    details = f"synced={synced}, failed={failed}, conflicts={conflicts}, duration_ms={duration_ms:.0f}"
    if error:
        details += f", error={error[:200]}"
    log_sync_event("sync", details, namespace=namespace, data_dir=data_dir)


def log_operation(
    namespace: str,
    action: str,
    op_id: str,
    entity_type: str,
    entity_id: str,
    data_dir: Optional[PathLike] = None,
) -> None:
    log_sync_event(
        action,
        f"op={op_id[:8]}, entity={entity_type}/{entity_id}",
        namespace=namespace,
        data_dir=data_dir,
    )
