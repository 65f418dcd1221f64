"""
Logging configuration for the job queue engine.

One file per UTC calendar day, named after the day and the time the process
started: logs/jobqueue_YYYYMMDD_<START_HHMMSS>.log. Engine timestamps are
UTC, so log files roll over at the same midnight as job records.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

LOGGER_NAME = "src.jobqueue"
LOG_FILE_PREFIX = "jobqueue"

# Loops and workers run on named threads (jobqueue-dispatcher, jobqueue-broadcast, ...)
LOG_FORMAT = "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s"


def _utc_day(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y%m%d")


class DailyRotatingFileHandler(logging.FileHandler):
    """
    File handler that switches files when a record's UTC day changes.

    The day is taken from the record itself, so a record created just before
    midnight lands in that day's file even if it is emitted after.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        started_at: Optional[datetime] = None,
        encoding: str = "utf-8",
    ):
        started_at = started_at or datetime.now(timezone.utc)

        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.start_hhmmss = started_at.strftime("%H%M%S")
        self.current_day = started_at.strftime("%Y%m%d")

        super().__init__(self.path_for(self.current_day), mode="a", encoding=encoding)

    def path_for(self, day: str) -> str:
        return str((self.log_dir / f"{LOG_FILE_PREFIX}_{day}_{self.start_hhmmss}.log").absolute())

    def emit(self, record: logging.LogRecord) -> None:
        day = _utc_day(record.created)
        if day != self.current_day:
            self.acquire()
            try:
                if self.stream is not None:
                    self.stream.close()
                self.baseFilename = self.path_for(day)
                self.current_day = day
                self.stream = self._open()
            finally:
                self.release()

        super().emit(record)


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = "logs",
    console: bool = True,
) -> logging.Logger:
    """
    Configure the engine's package logger and return it.

    Every module logs under "src.jobqueue.<module>", so the handlers set here
    receive all of them. Calling again replaces the handlers.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_dir: Directory for the daily files; None disables file logging
        console: Also log to stderr

    Returns:
        The configured "src.jobqueue" logger
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(numeric_level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())
    if log_dir is not None:
        handlers.append(DailyRotatingFileHandler(log_dir=log_dir))

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    destinations = [getattr(h, "baseFilename", "console") for h in handlers]
    logger.info(f"Logging started - level: {log_level.upper()}, outputs: {destinations}")
    return logger
