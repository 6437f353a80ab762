"""Logging configuration for CLI runs."""

import logging
import sys
from pathlib import Path

from src.cli.config import LoggingConfig


def configure_logging(config: LoggingConfig, verbose: bool = False) -> None:
    """Configure root logging to stderr, plus an optional log file.

    Args:
        config: Logging section of the loaded config.
        verbose: Force DEBUG for the ``src`` loggers.
    """
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.file:
        log_path = Path(config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(level=logging.WARNING, format=config.format, handlers=handlers, force=True)
    # Ensure our application loggers are captured
    logging.getLogger("src").setLevel(level)
