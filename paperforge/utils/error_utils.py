"""Utilities for error handling and sanitization."""

import re
from typing import Any, Dict

GENERIC_ERROR_MESSAGE = "An internal error occurred. Please try again later."

# (pattern, replacement) pairs applied in order
_REDACTIONS = [
    (re.compile(r"sk-[A-Za-z0-9_-]{10,}"), "sk-***"),
    (re.compile(r"api[_-]?key[=:]\s*[A-Za-z0-9_-]+", re.IGNORECASE), "api_key=***"),
    (re.compile(r"(password|secret|token)[=:]\s*\S+", re.IGNORECASE), r"\1=***"),
    # SQLAlchemy appends the failing statement and its parameters
    (re.compile(r"\[SQL:.*?\]", re.DOTALL), "[SQL: ***]"),
    (re.compile(r"\[parameters:.*?\]", re.DOTALL), "[parameters: ***]"),
    (re.compile(r"/[^\s]+\.(py|db|log|sqlite)"), "***"),
]

_TECHNICAL_MARKERS = (
    "traceback",
    'file "',
    "attributeerror",
    "typeerror",
    "keyerror",
    "sqlalchemy",
    "operationalerror",
)


def sanitize_error_message(error_message: str, is_production: bool = False) -> str:
    """
    Redact secrets, SQL and file paths from an error message.

    Args:
        error_message: Original error message
        is_production: Whether running in production mode

    Returns:
        The message unchanged in development, redacted in production
    """
    if not is_production:
        return error_message

    sanitized = error_message
    for pattern, replacement in _REDACTIONS:
        sanitized = pattern.sub(replacement, sanitized)

    if sanitized != error_message and len(sanitized.strip()) < 10:
        return GENERIC_ERROR_MESSAGE
    return sanitized


def get_safe_error_detail(error: Exception, is_production: bool = False) -> str:
    """
    Get an error message that is safe to return to API clients.

    Args:
        error: The exception that occurred
        is_production: Whether running in production mode

    Returns:
        Safe error message for clients
    """
    error_str = str(error)
    if is_production and any(marker in error_str.lower() for marker in _TECHNICAL_MARKERS):
        return GENERIC_ERROR_MESSAGE
    return sanitize_error_message(error_str, is_production)


def safe_details(details: Dict[str, Any], is_production: bool = False) -> Dict[str, Any]:
    """Sanitize the string values of an exception's details mapping."""
    if not is_production:
        return details
    return {
        key: sanitize_error_message(value, True) if isinstance(value, str) else value
        for key, value in details.items()
    }
