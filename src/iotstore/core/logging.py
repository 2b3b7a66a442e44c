"""Utility for configuring Loguru loggers."""

import json
import logging as pylogging
import re
import sys
from pathlib import Path
from types import FrameType
from typing import Any, List, Optional

import pendulum
from loguru import logger

from iotstore.core.logabc import LOGGING_LEVELS


class InterceptHandler(pylogging.Handler):
    """A logging handler that redirects standard Python logging messages to Loguru.

    Logs sent to the standard logging system (e.g. by sqlite3 adapters or pandas) are
    re-emitted through Loguru with the original call depth and exception info.

    Attributes:
        loglevel_mapping (dict): Mapping from standard logging levels to Loguru level names.
    """

    loglevel_mapping: dict[int, str] = {
        50: "CRITICAL",
        40: "ERROR",
        30: "WARNING",
        20: "INFO",
        10: "DEBUG",
        5: "TRACE",
        0: "NOTSET",
    }

    def emit(self, record: pylogging.LogRecord) -> None:
        """Emits a logging record by forwarding it to Loguru with preserved metadata.

        Args:
            record (logging.LogRecord): A record object containing log message and metadata.
        """
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = self.loglevel_mapping.get(record.levelno, "INFO")

        frame: Optional[FrameType] = pylogging.currentframe()
        depth: int = 2
        while frame and frame.f_code.co_filename == pylogging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


console_handler_id: Optional[int] = None
file_handler_id: Optional[int] = None


def configure_logging(config: Any) -> None:
    """(Re-)configure the loguru handlers from the logging settings.

    A console handler on stderr is always installed. A rotating JSON file handler is added
    if `logging.file_level` is set. Standard library logging is redirected to loguru.

    Args:
        config (ConfigIoT): Configuration providing the `logging` settings.
    """
    global console_handler_id, file_handler_id

    # Remove default handler and our previous handlers
    for handler_id in (0, console_handler_id, file_handler_id):
        if handler_id is None:
            continue
        try:
            logger.remove(handler_id)
        except ValueError:
            pass
    console_handler_id = None
    file_handler_id = None

    console_level = config.logging.console_level or "INFO"
    if console_level not in LOGGING_LEVELS:
        logger.error(f"Invalid console log level '{console_level}' - forced to INFO.")
        console_level = "INFO"

    console_handler_id = logger.add(
        sys.stderr,
        backtrace=True,
        level=console_level,
    )

    file_level = config.logging.file_level
    if file_level and config.logging.file_path:
        if file_level not in LOGGING_LEVELS:
            logger.error(f"Invalid file log level '{file_level}' - forced to INFO.")
            file_level = "INFO"

        file_handler_id = logger.add(
            sink=config.logging.file_path,
            rotation="100 MB",
            retention="3 days",
            enqueue=True,
            backtrace=True,
            level=file_level,
            serialize=True,  # JSON dict formatting
        )

    # Redirect standard logging to Loguru
    pylogging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    logger.info(f"Logger reconfigured - console: {console_level}, file: {file_level}.")


def read_file_log(
    log_path: Path,
    limit: int = 100,
    level: Optional[str] = None,
    contains: Optional[str] = None,
    regex: Optional[str] = None,
    from_time: Optional[str] = None,
    to_time: Optional[str] = None,
    tail: bool = False,
) -> List[dict]:
    """Read and filter structured log entries from a JSON-formatted log file.

    Args:
        log_path (Path): Path to the JSON-formatted log file.
        limit (int, optional): Maximum number of log entries to return. Defaults to 100.
        level (Optional[str], optional): Filter logs by log level (e.g., "INFO", "ERROR").
        contains (Optional[str], optional): Filter logs that contain this substring in their
            message. Case-insensitive.
        regex (Optional[str], optional): Filter logs whose message matches this regular expression.
        from_time (Optional[str], optional): ISO 8601 datetime string to filter logs not earlier
            than this time.
        to_time (Optional[str], optional): ISO 8601 datetime string to filter logs not later
            than this time.
        tail (bool, optional): If True, return the last matching entries instead of the first.

    Returns:
        List[dict]: A list of filtered log entries as dictionaries.

    Raises:
        FileNotFoundError: If the log file does not exist.
        ValueError: If the datetime strings are invalid or improperly formatted.
    """
    if not log_path.exists():
        raise FileNotFoundError("Log file not found")

    try:
        from_dt = pendulum.parse(from_time) if from_time else None
        to_dt = pendulum.parse(to_time) if to_time else None
    except pendulum.parsing.exceptions.ParserError as e:
        raise ValueError(f"Invalid date/time format: {e}") from e

    regex_pattern = re.compile(regex) if regex else None

    def matches_filters(log: dict) -> bool:
        record = log.get("record", log)
        message = record.get("message", "")
        if level and record.get("level", {}).get("name") != level.upper():
            return False
        if contains and contains.lower() not in message.lower():
            return False
        if regex_pattern and not regex_pattern.search(message):
            return False
        if from_dt or to_dt:
            try:
                log_time = pendulum.from_timestamp(record["time"]["timestamp"])
            except (KeyError, TypeError, ValueError):
                return False
            if from_dt and log_time < from_dt:
                return False
            if to_dt and log_time > to_dt:
                return False
        return True

    with log_path.open("r", encoding="utf-8", newline=None) as f_txt:
        lines = f_txt.readlines()
    if tail:
        lines = lines[::-1]

    matched_logs = []
    for line in lines:
        if not line.strip():
            continue
        try:
            log = json.loads(line)
        except json.JSONDecodeError:
            continue
        if matches_filters(log):
            matched_logs.append(log)
            if len(matched_logs) >= limit:
                break

    if tail:
        matched_logs = matched_logs[::-1]
    return matched_logs
