"""Shared logging configuration for the comparison engine.

Call ``configure_logging()`` once at any CLI entry point to ensure logs are emitted.
The function is idempotent: if the root logger already has handlers, it does nothing.
The level and log file location come from the ``logging`` section of engine.yaml.
"""

import logging
import os
from typing import Optional, Union

from .config.settings import DEFAULT_LOG_DIR, DEFAULT_LOG_FILE, LoggingSettings


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[str] = DEFAULT_LOG_DIR,
    log_file: str = DEFAULT_LOG_FILE,
) -> None:
    """Configure root logger with console + optional file handler.

    Only configures if the root logger has no handlers (idempotent).
    An empty or None log_dir disables the file handler.
    Noisy third-party loggers (urllib3 connection pool) are capped at WARNING.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    # File handler only if the log directory can be created
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            fh = logging.FileHandler(os.path.join(log_dir, log_file), mode="a")
            fh.setFormatter(formatter)
            root.addHandler(fh)
        except OSError as e:
            root.warning(f"File logging disabled, cannot open {log_dir}/{log_file}: {e}")

    root.setLevel(level)
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))


def configure_from_settings(settings: LoggingSettings, verbose: bool = False) -> None:
    """Configure logging from engine.yaml settings; verbose forces DEBUG."""
    level = logging.DEBUG if verbose else settings.level
    configure_logging(level, log_dir=settings.log_dir, log_file=settings.log_file)
