"""Logging for the replay sandbox: rotating file plus console, stamped with replay time."""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Callable, Optional

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(replay_time)s | %(name)s | %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'
NO_REPLAY_TIME = '-'

ReplayTimeSource = Callable[[], Optional[str]]


class ReplayTimeFilter(logging.Filter):
    """
    Adds ``record.replay_time``: the simulated cursor of the attached session,
    or ``-`` before a session exists. Wall-clock ``asctime`` stays untouched,
    so a log line shows both when it was written and where the replay stood.
    """

    def __init__(self, source: Optional[ReplayTimeSource] = None):
        super().__init__()
        self.source = source

    def filter(self, record: logging.LogRecord) -> bool:
        stamp = None
        if self.source is not None:
            try:
                stamp = self.source()
            except RuntimeError:
                # Cursor not readable mid-reload.
                stamp = None
        record.replay_time = stamp or NO_REPLAY_TIME
        return True


def _replay_filters(logger: logging.Logger) -> list:
    return [
        item
        for handler in logger.handlers
        for item in handler.filters
        if isinstance(item, ReplayTimeFilter)
    ]


def attach_replay_clock(source: Optional[ReplayTimeSource], logger: Optional[logging.Logger] = None) -> int:
    """Point every configured handler at a replay-time source; returns how many handlers were updated."""
    filters = _replay_filters(logger or logging.getLogger())
    for item in filters:
        item.source = source
    return len(filters)


def teardown_logging(logger: Optional[logging.Logger] = None) -> None:
    """Flush, detach, and close all handlers from the provided logger."""
    target = logger or logging.getLogger()
    for handler in list(target.handlers):
        target.removeHandler(handler)
        try:
            handler.flush()
            handler.close()
        except Exception:
            # Best-effort cleanup; logging should never crash the replay.
            pass


def setup_logging(
    log_level: str = 'INFO',
    logs_dir: Optional[Path] = None,
    console_output: bool = True,
    log_filename: str = 'replay.log',
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    replay_time: Optional[ReplayTimeSource] = None,
) -> logging.Logger:
    """
    Configure the root logger for a replay run.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logs_dir: Directory for log files. If None, uses 'logs/' in current directory.
        console_output: Whether to also log INFO and above to stdout
        log_filename: Name of the rotating log file inside logs_dir
        max_bytes: Rotation threshold of the log file
        backup_count: Rotated files kept next to the live one
        replay_time: Optional callable returning the session cursor as an ISO string;
            can also be set later with :func:`attach_replay_clock`

    Returns:
        Configured root logger
    """
    logs_dir = Path.cwd() / 'logs' if logs_dir is None else Path(logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Release file descriptors held by a previous configuration.
    teardown_logging(logger)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    log_file = logs_dir / log_filename
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=int(max_bytes),
        backupCount=int(backup_count),
        encoding='utf-8',
        delay=True,
    )
    file_handler.setLevel(logging.DEBUG)
    handlers: list = [file_handler]

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        handlers.append(console_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ReplayTimeFilter(replay_time))
        logger.addHandler(handler)

    logger.info(f"Logging initialized at {log_level} level")
    logger.info(f"Log file: {log_file}")

    return logger
