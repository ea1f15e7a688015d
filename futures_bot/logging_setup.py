"""Structured logging setup using loguru."""
import sys
from pathlib import Path
from typing import Set

from loguru import logger as _logger

# Values that must never reach a sink (API keys and secrets).
_REDACTED: Set[str] = set()

# Shorter values would mask ordinary words in every message.
MIN_SECRET_LENGTH = 8


def register_secret(value: str) -> bool:
    """Mask ``value`` in every log message emitted from now on.

    Returns False (and masks nothing) for values shorter than
    ``MIN_SECRET_LENGTH``.
    """
    if not value or len(value) < MIN_SECRET_LENGTH:
        return False
    _REDACTED.add(value)
    return True


def unregister_secret(value: str) -> None:
    _REDACTED.discard(value)


def clear_secrets() -> None:
    """Forget every registered secret."""
    _REDACTED.clear()


def _redact(record) -> None:
    message = record["message"]
    for secret in _REDACTED:
        if secret in message:
            message = message.replace(secret, "***")
    record["message"] = message


def setup_logging(
    log_file: str = "futures_bot.log",
    level: str = "INFO",
    enable_console: bool = True,
) -> None:
    """Configure structured logging for the trading bot.
    
    Args:
        log_file: Path to log file
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to console as well
    """
    # Remove default handler
    _logger.remove()
    
    # Log format: timestamp, level, module, function, message
    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )
    
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _logger.add(
        str(log_path),
        format=log_format,
        level=level,
        rotation="100 MB",
        retention="7 days",
    )
    
    if enable_console:
        _logger.add(
            sys.stdout,
            format=log_format,
            level=level,
            colorize=True,
        )


_logger.configure(patcher=_redact)

# Get logger for use in modules
logger = _logger
