"""Logging configuration for qrpass.

Everything logs under the "qrpass" logger. The aiohttp access log is
routed to the same handlers so scans from phones show up next to the
session lifecycle messages.
"""

import logging
from pathlib import Path

from qrpass.config import Config

# Loggers owned by setup_logging
LOGGER_NAMES = ("qrpass", "aiohttp.access")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logger: logging.Logger | None = None


def short_id(session_id: str | None) -> str:
    """Session IDs are capabilities, so only a prefix is ever logged."""
    if not session_id:
        return "-"
    return f"{session_id[:8]}..."


def _build_handlers(config: Config) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(config: Config) -> logging.Logger:
    """Set up logging based on configuration.

    Calling it again returns the logger configured the first time.

    Args:
        config: Configuration object with log settings.

    Returns:
        The "qrpass" logger.
    """
    global _logger

    if _logger is not None:
        return _logger

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    handlers = _build_handlers(config)

    for name in LOGGER_NAMES:
        named = logging.getLogger(name)
        named.handlers.clear()
        for handler in handlers:
            named.addHandler(handler)
        named.propagate = False

    logging.getLogger("qrpass").setLevel(level)
    # Request lines only when debugging
    logging.getLogger("aiohttp.access").setLevel(
        logging.INFO if level <= logging.DEBUG else logging.WARNING
    )

    _logger = logging.getLogger("qrpass")
    return _logger


def reset_logging() -> None:
    """Reset logging state. Used for testing."""
    global _logger
    if _logger is None:
        return

    for name in LOGGER_NAMES:
        named = logging.getLogger(name)
        for handler in named.handlers:
            handler.close()
        named.handlers.clear()
        named.propagate = True
    _logger = None
