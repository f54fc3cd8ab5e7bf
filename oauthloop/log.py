"""Logging utilities for oauthloop.

Modules log through children of the ``oauthloop`` logger
(``oauthloop.auth`` for the flows). This module owns the handler setup
and the redaction helper used before token payloads reach a log line.
"""

from __future__ import annotations

import logging
import sys

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from .config import LogSettings


_DEFAULT_FORMAT = "%(name)s - %(levelname)s - %(message)s"


class _LoggerHolder:
    """Holder for the global logger instance."""

    instance: logging.Logger | None = None


def get_logger() -> logging.Logger:
    """Get the oauthloop logger instance.

    Returns
    -------
    logging.Logger
        The oauthloop logger configured with a stream handler.
    """
    if _LoggerHolder.instance is None:
        logger = logging.getLogger("oauthloop")
        logger.setLevel(logging.WARNING)

        # Only add handler if none exists
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(logging.DEBUG)
            handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
            logger.addHandler(handler)

        _LoggerHolder.instance = logger

    return _LoggerHolder.instance


def set_level(level: int | str) -> None:
    """Set the logging level.

    Parameters
    ----------
    level : int or str
        The logging level (e.g., logging.DEBUG, "DEBUG").
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    get_logger().setLevel(level)


def enable_debug() -> None:
    """Enable verbose logging of the handshake and token endpoint calls."""
    set_level(logging.DEBUG)


def configure(settings: LogSettings) -> logging.Logger:
    """Apply level and format from LogSettings to the oauthloop logger.

    Parameters
    ----------
    settings : LogSettings
        The logging section of the loaded settings.

    Returns
    -------
    logging.Logger
        The configured logger.
    """
    logger = get_logger()
    set_level(settings.level)
    for handler in logger.handlers:
        handler.setFormatter(logging.Formatter(settings.format))
    return logger


def log_callback_error(owner: str, exc: BaseException) -> None:
    """Log a completion callback error with standardized format.

    Parameters
    ----------
    owner : str
        Description of the object whose callback failed.
    exc : BaseException
        The exception that was raised.
    """
    get_logger().error("Completion callback error for %s: %s", owner, exc, exc_info=exc)


# Exact key names (case-insensitive) redacted in log output.
_SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "authorization_code",
        "client_secret",
        "code",
        "code_verifier",
        "credential",
        "credentials",
        "id_token",
        "password",
        "refresh_token",
        "secret",
        "token",
        "verifier",
    }
)


def redact_sensitive_data(
    data: dict[str, Any] | list[Any] | str | None, max_depth: int = 5
) -> dict[str, Any] | list[Any] | str | None:
    """Redact sensitive values from data for safe logging.

    Recursively traverses dicts/lists and replaces values for keys
    named in the sensitive key set with "[REDACTED]".

    Parameters
    ----------
    data : dict or list or str or None
        The data to redact.
    max_depth : int, optional
        Maximum recursion depth to prevent infinite loops (default: 5).

    Returns
    -------
    dict or list or str or None
        A copy of the data with sensitive values redacted.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"

    if data is None:
        return None

    if isinstance(data, dict):
        result: dict[str, Any] = {}
        for k, v in data.items():
            key_lower = k.lower() if isinstance(k, str) else str(k).lower()
            if key_lower in _SENSITIVE_KEYS:
                result[k] = "[REDACTED]"
            else:
                result[k] = redact_sensitive_data(v, max_depth - 1)
        return result

    if isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]

    return data
