"""Logging utils"""

import inspect
import logging
import os
import sys
from datetime import datetime

from loguru import logger

from clubhub.settings.models import LoggingModel
from clubhub.utils import data_dir_path

LAST_LOGS_CLEANED: datetime | None = None

logs_dir_path = data_dir_path / "logs"

# name: (severity, colour, icon); severity None keeps a built-in level's number
LEVEL_STYLES: dict[str, tuple[int | None, str, str]] = {
    "TRACE": (None, "27F5E7", "✏️ "),
    "DEBUG": (None, "98C1D9", "🐞"),
    "INFO": (None, "818589", "📰"),
    "SUCCESS": (None, "00ff00", "✔️ "),
    "WARNING": (None, "ffcc00", "⚠️ "),
    "CRITICAL": (None, "ff0000", ""),
    "DATABASE": (5, "d834eb", "🛢️"),
    "QUEUE": (10, "3D5A80", "📬"),
    "PROGRAM": (20, "cc6600", "🤖"),
    "NOTIFY": (20, "ce7fab", "🔔"),
    "SCAN": (20, "e56c49", "🛡️ "),
    "EXPORT": (20, "92a1cf", "🗃️ "),
    "AUDIT": (20, "DAD3BE", "📜"),
}

LOG_FORMAT = (
    "<fg #818589>{time:YY-MM-DD HH:mm:ss}</fg #818589> | "
    "<level>{level.icon}</level> <level>{level: <9}</level> | "
    "<fg #818589>{process}</fg #818589> "
    "<fg #e7e7e7>{module}.{function}</fg #e7e7e7> - <level>{message}</level>"
)

STDLIB_LOGGERS = ("dramatiq", "alembic", "pika")


class InterceptHandler(logging.Handler):
    """Forward standard library log records (dramatiq, alembic, pika) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _register_level(name: str, severity: int | None, color: str, icon: str) -> None:
    color = os.getenv(f"CLUBHUB_LOGGER_{name}_FG", color)
    icon = os.getenv(f"CLUBHUB_LOGGER_{name}_ICON", icon)
    style = {"color": f"<fg #{color}>", "icon": icon}
    if severity is None:
        logger.level(name, **style)
        return
    try:
        logger.level(name, no=severity, **style)
    except (TypeError, ValueError):
        # already registered by an earlier setup_logger call
        logger.level(name, **style)


def setup_logger(level: str, log_settings: LoggingModel | None = None):
    """
    Configure loguru for a worker process.

    Console output always goes to stderr. When file logging is enabled every
    process gets its own file, since ``dramatiq`` forks several worker
    processes that would otherwise write to the same one.
    """
    log_settings = log_settings or LoggingModel(enabled=False)
    level = (level or "INFO").upper()

    for name, style in LEVEL_STYLES.items():
        _register_level(name, *style)

    handlers = [
        {
            "sink": sys.stderr,
            "level": level,
            "format": LOG_FORMAT,
            "backtrace": False,
            "diagnose": False,
            "enqueue": True,
        }
    ]

    if log_settings.enabled:
        os.makedirs(logs_dir_path, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M")
        handlers.append(
            {
                "sink": logs_dir_path / f"clubhub-{stamp}-{os.getpid()}.log",
                "level": level,
                "format": LOG_FORMAT,
                "rotation": f"{log_settings.rotation_mb} MB" if log_settings.rotation_mb > 0 else None,
                "retention": f"{log_settings.retention_hours} hours",
                "compression": None if log_settings.compression == "disabled" else log_settings.compression,
                "backtrace": False,
                "diagnose": True,
                "enqueue": True,
            }
        )

    logger.configure(handlers=handlers)
    intercept_stdlib_logging()


def intercept_stdlib_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(handlers=[InterceptHandler()], level=level, force=True)
    for name in STDLIB_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.handlers = []
        std_logger.propagate = True
    logging.getLogger("pika").setLevel(logging.WARNING)


def log_cleaner(log_settings: LoggingModel):
    """Remove log files older than the retention window, at most once per clean interval."""
    global LAST_LOGS_CLEANED

    if not log_settings.enabled or not logs_dir_path.exists():
        return
    now = datetime.now()
    if LAST_LOGS_CLEANED and (now - LAST_LOGS_CLEANED).total_seconds() < log_settings.clean_interval:
        return
    LAST_LOGS_CLEANED = now

    cutoff = now.timestamp() - log_settings.retention_hours * 3600
    stale = [path for path in logs_dir_path.glob("clubhub-*.log*") if path.stat().st_mtime < cutoff]
    for path in stale:
        try:
            path.unlink()
        except OSError as e:
            logger.warning(f"Failed to remove log file {path.name}: {e}")
    if stale:
        logger.log("PROGRAM", f"Cleaned up {len(stale)} old log files")
