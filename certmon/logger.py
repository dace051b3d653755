"""
Logging setup for CertMon.

Console output is one line per record, tagged with the probed domain when
the record carries one. The optional log file gets JSON lines.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path

from certmon.config import Config

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"


class ConsoleFormatter(logging.Formatter):
    """Human-readable console lines, colored by level on a terminal."""

    def __init__(self, use_color: bool = False) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)-16s | %(domain_tag)s%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        domain = getattr(record, "domain", None)
        record.domain_tag = f"[{domain}] " if domain else ""
        line = super().format(record)
        color = _LEVEL_COLORS.get(record.levelno) if self.use_color else None
        return f"{color}{line}{_RESET}" if color else line


class StructuredFormatter(logging.Formatter):
    """JSON formatter for the log file."""

    EXTRA_FIELDS = ("domain", "probe_duration", "error_type", "expiration")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        entry.update(
            {field: getattr(record, field) for field in self.EXTRA_FIELDS if hasattr(record, field)}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(config: Config) -> None:
    """
    Configure the root logger from config.

    Args:
        config: Configuration object
    """
    level = getattr(logging, config.log_level)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ConsoleFormatter(use_color=sys.stdout.isatty()))
    handlers = [console]

    if config.log_file:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setFormatter(StructuredFormatter())
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        root_logger.addHandler(handler)

    # uvicorn's own access log already covers requests
    logging.getLogger("uvicorn").setLevel(max(level, logging.WARNING))

    get_logger("logging").info(
        f"Logging initialized - Level: {config.log_level}"
        + (f", file: {config.log_file}" if config.log_file else "")
    )


def get_logger(name: str) -> logging.Logger:
    """Return the certmon.<name> logger."""
    return logging.getLogger(f"certmon.{name}")


def log_probe_start(logger: logging.Logger, domain: str, jitter: float) -> None:
    logger.debug(f"Probing after {jitter:.3f}s jitter", extra={"domain": domain})


def log_probe_success(
    logger: logging.Logger, domain: str, expiration: str, duration: float
) -> None:
    logger.debug(
        f"Chain expires {expiration} (probe took {duration:.3f}s)",
        extra={"domain": domain, "expiration": expiration, "probe_duration": duration},
    )


def log_probe_failure(
    logger: logging.Logger, domain: str, error: Exception, failures: int
) -> None:
    """Log a failed probe; the previous expiration is kept."""
    logger.warning(
        f"Probe failed ({failures} consecutive): {error}",
        extra={"domain": domain, "error_type": type(error).__name__},
    )
