"""Logging for the pairing sidecar.

The sidecar runs as a child of the gateway process, so everything goes to
stderr (and optionally a file) under the "sidecar" logger. Registered
secrets, such as the gateway bearer token, are masked by every handler
before a record is written.
"""

import logging
import sys
from pathlib import Path

from sidecar.config import Config

LOGGER_NAME = "sidecar"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MASK = "***"


class RedactingFilter(logging.Filter):
    """Replaces registered secrets in formatted log messages."""

    def __init__(self):
        super().__init__()
        self._secrets: set[str] = set()

    def add(self, secret: str) -> None:
        if secret:
            self._secrets.add(secret)

    def clear(self) -> None:
        self._secrets.clear()

    def redact(self, text: str) -> str:
        # Longest first so a secret containing another is masked whole.
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


_redactor = RedactingFilter()
_logger: logging.Logger | None = None


def redact_secret(secret: str) -> None:
    """Mask secret in everything the sidecar logs from now on."""
    _redactor.add(secret)


def _build_handlers(config: Config) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_redactor)
    return handlers


def setup_logging(config: Config) -> logging.Logger:
    """Configure the "sidecar" logger once per process.

    Later calls return the same logger unchanged until reset_logging().

    Args:
        config: Configuration with log_level and optional log_file.

    Returns:
        The package logger.
    """
    global _logger

    if _logger is not None:
        return _logger

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    logger.handlers.clear()
    for handler in _build_handlers(config):
        logger.addHandler(handler)
    logger.propagate = False

    _logger = logger
    return logger


def reset_logging() -> None:
    """Drop handlers and registered secrets. Used for testing."""
    global _logger
    _redactor.clear()
    if _logger is None:
        return
    for handler in _logger.handlers:
        handler.close()
    _logger.handlers.clear()
    _logger.setLevel(logging.NOTSET)
    _logger.propagate = True
    _logger = None
