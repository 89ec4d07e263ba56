"""Logging configuration and utilities."""

import logging
import os
from datetime import datetime

__all__ = [
    "setup_logging",
    "get_logger",
    "truncate_token",
    "extract_stats",
    "format_request_log",
]


def setup_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable.

    Valid levels: DEBUG, INFO, WARNING, ERROR (default: INFO)
    """
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, None)

    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger("live_proxy")
    logger.setLevel(level)
    logger.propagate = False  # Prevent duplicate logs to root logger

    # Only add handler if not already configured
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)


def extract_stats(action: str, result: dict) -> str:
    """Extract a short summary of an action's result."""
    if action == "list_sessions":
        return f"{result.get('count', 0)} sessions"

    if action == "list":
        return f"{len(result.get('tokens', []))} tokens"

    if action == "cleanup":
        return f"{result.get('cleaned', 0)} cleaned"

    if action == "update_usage":
        return f"{result.get('sessionsUsed', 0)}s/{result.get('messagesUsed', 0)}m used"

    if action == "validate":
        return "valid" if result.get("isValid") else result.get("error", "invalid")

    return "-"


def truncate_token(token: str | None) -> str:
    """Truncate token to show first 3 and last 3 chars.

    Tokens 8 chars or shorter show *** for security.
    """
    if not token or len(token) <= 8:
        return "***"
    return f"{token[:3]}...{token[-3:]}"


def format_request_log(
    owner_id: str | None,
    token: str | None,
    action: str,
    session_id: str | None,
    stats: str,
    status: str,
    duration_ms: int,
    error_message: str | None = None,
) -> str:
    """Format a request log line.

    Format: YYYY-MM-DD HH:MM:SS | owner (token) | action | session | stats | status | duration
    """
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    truncated = truncate_token(token)
    owner = owner_id if owner_id else "-"
    session = session_id if session_id else "-"

    line = f"{timestamp} | {owner} ({truncated}) | {action} | {session} | {stats} | {status} | {duration_ms}ms"

    if error_message:
        line += f"\n    {error_message}"

    return line


def get_logger(name: str) -> logging.Logger:
    """Get a child logger under the live_proxy namespace."""
    return logging.getLogger(f"live_proxy.{name}")
