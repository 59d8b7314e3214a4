"""Logging configuration using Loguru.

Provides structured logging with:
- Console output for development
- File rotation for production
- Standard library loggers (uvicorn, websockets, twilio) routed to Loguru
- Credentials redacted and phone numbers masked in logs
"""

import logging
import re
import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{extra[call_id]}</magenta> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{extra[call_id]} | "
    "{message}"
)

# Loggers owned by libraries that log through the standard library
STDLIB_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "websockets", "twilio")

_SECRET_PATTERN = re.compile(
    r"(?i)(x-api-key[\"']?\s*[:=]\s*[\"']?|auth_?token[\"']?\s*[:=]\s*[\"']?|"
    r"authorization[\"']?\s*[:=]\s*[\"']?(?:basic |bearer )?)[^\s\"'&,}]+"
)


class _InterceptHandler(logging.Handler):
    """Forward standard library records to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip logging-module frames so Loguru reports the real caller
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def redact_secrets(message: str) -> str:
    """Replace API keys and tokens in a log message with ***."""
    return _SECRET_PATTERN.sub(r"\1***", message)


def _patch_record(record: dict) -> None:
    record["message"] = redact_secrets(record["message"])


def setup_logging(
    level: str = "INFO",
    log_dir: str = "logs",
    enable_file: bool = True,
) -> None:
    """Configure application logging.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for log files
        enable_file: Whether to enable file logging
    """
    logger.remove()
    logger.configure(extra={"call_id": "-"}, patcher=_patch_record)

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=False,
    )

    if enable_file:
        log_path = Path(log_dir)
        log_path.mkdir(exist_ok=True)

        logger.add(
            log_path / "callbridge_{time:YYYY-MM-DD}.log",
            format=FILE_FORMAT,
            level=level,
            rotation="100 MB",
            retention="30 days",
            compression="gz",
            backtrace=True,
            diagnose=False,
        )

        # Failed calls and relay errors only
        logger.add(
            log_path / "errors_{time:YYYY-MM-DD}.log",
            format=FILE_FORMAT + "\n{exception}",
            level="ERROR",
            rotation="50 MB",
            retention="90 days",
            compression="gz",
            backtrace=True,
            diagnose=False,
        )

    intercept = _InterceptHandler()
    for name in STDLIB_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [intercept]
        stdlib_logger.propagate = False

    logger.info(f"Logging initialized at {level} level")


def get_logger(name: str, **context) -> "logger":
    """Get a logger instance with the given name.

    Extra keyword arguments are bound to every record, e.g.
    ``get_logger(__name__, call_id="CA123")``.

    Usage:
        from callbridge.logging_config import get_logger
        logger = get_logger(__name__)
        logger.info("Message")
    """
    return logger.bind(name=name, **context)


def mask_phone(phone: str) -> str:
    """Mask phone number for logging: +14155550123 -> +1XXXX0123."""
    if not phone or len(phone) < 6:
        return "XXXX"
    return f"{phone[:2]}XXXX{phone[-4:]}"
