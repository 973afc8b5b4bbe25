"""Shared utility functions."""

import logging
import os
import sys

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("deployn8n")

SECRET_MASK = "***"


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Use as out_stream/err_stream in fabric c.run() calls so remote SSH output
    goes through the logging system instead of directly to the terminal.
    Each line is redacted against secrets before it is logged.
    """

    def __init__(self, secrets: list[str] | None = None) -> None:
        self._buf = ""
        self._secrets = secrets or []

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            if line.strip():
                logger.info(redact(line, self._secrets))

    def flush(self) -> None:
        if self._buf.strip():
            logger.info(redact(self._buf, self._secrets))
            self._buf = ""


def setup_logging(level: int | str | None = None) -> None:
    """Set up logging with Rich handler to stderr.

    :param level: Log level; defaults to DEPLOYN8N_LOG_LEVEL or INFO
    """
    if level is None:
        level = os.getenv("DEPLOYN8N_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=False,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl in [
        ("boto3", logging.INFO),
        ("botocore", logging.WARNING),
        ("urllib3", logging.WARNING),
        ("paramiko", logging.WARNING),
        ("fabric", logging.WARNING),
        ("invoke", logging.WARNING),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def mask(value: str | None) -> str:
    """Return a fixed mask for a secret, never a fragment of it."""
    return SECRET_MASK if value else ""


def redact(text: str, secrets: list[str]) -> str:
    """Replace every occurrence of each secret in text with the mask.

    :param text: Text that may contain secret values (scripts, command lines)
    :param secrets: Secret values to hide; empty values are ignored
    :return: Text safe to print or log
    """
    for secret in sorted((s for s in secrets if s), key=len, reverse=True):
        text = text.replace(secret, SECRET_MASK)
    return text
