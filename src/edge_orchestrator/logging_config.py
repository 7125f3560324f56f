"""Logging configuration for Edge Orchestrator."""

import logging
import sys
from typing import Any, MutableMapping, Tuple


def setup_logging(level: str = "INFO", debug: bool = False) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        debug: Enable debug mode with verbose formatting
    """
    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)

    # Format
    if debug:
        log_format = (
            "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
        )
    else:
        log_format = "%(asctime)s | %(levelname)-8s | %(message)s"

    # Configure root logger
    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every record with the owning session id."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[session {self.extra['session_id']}] {msg}", kwargs


def session_logger(logger: logging.Logger, session_id: str) -> SessionLoggerAdapter:
    """Wrap a module logger so its messages carry session context."""
    return SessionLoggerAdapter(logger, {"session_id": session_id})
