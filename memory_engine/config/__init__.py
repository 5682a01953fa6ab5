"""Configuration and logging setup."""

from .logging_config import configure_logging
from .settings import Settings

__all__ = ["Settings", "configure_logging"]
