import sys
from pathlib import Path

import loguru
from loguru import logger

from partylaunch.utils.app_info import APP_NAME

LAUNCH_WARNINGS_FILE = "launch_warnings.txt"


def formatter(record: "loguru.Record") -> str:
    """Custom formatter for loguru logger"""
    format_string = (
        "[{level}]"
        "[{time:YYYY-MM-DD HH:mm:ss}]"
        "[{process.id}]"
        "[{thread.name}]"
        "[{module}]"
        "[{function}][{line}]"
        " : "
    )
    return format_string + "{message}\n"


def _is_launch_warning(record: "loguru.Record") -> bool:
    return bool(record["extra"].get("launch_warning"))


def configure_logging(logs_folder: Path, debug: bool = False) -> None:
    """
    Replace loguru's default handler with the launcher's sinks.

    The previous session's log is kept as ``partylaunch.old.log``. Messages bound
    with ``launch_warning=True`` are additionally collected in
    ``launch_warnings.txt`` for the current session.
    """
    logs_folder.mkdir(parents=True, exist_ok=True)

    # We have log_file (foo.log) and old_log_file (foo.old.log). If old_log_file exists,
    # remove it. If log_file exists, rename it to old_log_file.
    log_file = logs_folder / (APP_NAME + ".log")
    old_log_file = logs_folder / (APP_NAME + ".old.log")
    if old_log_file.exists() and old_log_file.is_file():
        old_log_file.unlink()
    if log_file.exists() and log_file.is_file():
        log_file.rename(old_log_file)

    # Remove the default stderr logger
    logger.remove()

    logger.add(log_file, level="DEBUG", format=formatter)
    logger.add(
        sys.stderr,
        level="DEBUG" if debug else "INFO",
        format=formatter,
        colorize=False,
    )
    logger.add(
        logs_folder / LAUNCH_WARNINGS_FILE,
        level="WARNING",
        format="{time:YYYY-MM-DD HH:mm:ss} {message}\n",
        filter=_is_launch_warning,
        mode="w",
    )
