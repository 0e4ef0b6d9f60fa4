"""
Pipeline logging setup
- stdout + daily-rotated pipeline.log
- level and directory from Settings, overridable from the CLI
- per-module logger helper
"""
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from news_pipeline.utils.config import get_settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "pipeline.log"

# Chatty below WARNING during a fetch pass
_QUIET_LOGGERS = ("httpx", "httpcore", "aiohttp", "asyncio", "urllib3", "charset_normalizer")

_handlers: list[logging.Handler] = []


def setup_logging(
    level: str | None = None,
    log_dir: str | None = None,
    force: bool = False,
) -> None:
    """Install the console and file handlers on the root logger.

    The first call wins unless ``force`` is set, in which case the handlers
    installed earlier are replaced.

    Args:
        level: Level name overriding ``Settings.log_level``.
        log_dir: Directory overriding ``Settings.log_dir``.
        force: Re-install even if logging is already set up.
    """
    if _handlers and not force:
        return

    settings = get_settings()
    resolved = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    directory = Path(log_dir or settings.log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    for handler in _handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    _handlers.append(console_handler)

    # Rotated at midnight, 30 days kept
    file_handler = TimedRotatingFileHandler(
        filename=directory / LOG_FILE_NAME,
        when="midnight",
        backupCount=30,
        encoding="utf-8",
    )
    file_handler.suffix = "%Y-%m-%d"
    file_handler.setFormatter(formatter)
    _handlers.append(file_handler)

    root_logger.setLevel(resolved)
    for handler in _handlers:
        handler.setLevel(resolved)
        root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Module logger; installs the pipeline handlers on first use."""
    setup_logging()
    return logging.getLogger(name)
