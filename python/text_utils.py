"""
Shared text utilities for the Client Verification Portal

Small helpers used by the import pipeline, the verification handler and the
logging layer so that normalization and sanitization behave the same way
everywhere.
"""

import re
from typing import Any, Optional

# One @, no whitespace, a dot in the domain part.
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def mask_token(token: Optional[str]) -> str:
    """Return a loggable fragment of a verification token."""
    if not token:
        return "<empty>"
    token = sanitize_for_logging(token)
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


def is_valid_email(value: Optional[str]) -> bool:
    """Check that an address is syntactically plausible."""
    if not value:
        return False
    return bool(EMAIL_PATTERN.match(value.strip()))


def normalize_email(value: Optional[str]) -> str:
    """Lower-case and trim an email address for matching."""
    if value is None:
        return ""
    return value.strip().lower()


def clean_cell(value: Any) -> str:
    """
    Convert a spreadsheet cell to a trimmed string.

    Whole-number floats (as produced by spreadsheet tools for numeric
    client numbers and phone numbers) lose their trailing ``.0``.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def normalize_header(value: Any) -> str:
    """Normalize a header cell: lowercase, separators collapsed to ``_``."""
    text = clean_cell(value).lower()
    text = re.sub(r'[^a-z0-9]+', '_', text)
    return text.strip('_')
