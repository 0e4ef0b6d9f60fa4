"""Utility package: settings and logging."""
from news_pipeline.utils.config import Settings, get_settings
from news_pipeline.utils.logger import get_logger, setup_logging

__all__ = [
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
