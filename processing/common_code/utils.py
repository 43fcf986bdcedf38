"""
Common Utilities
================

Shared utility functions for the export pipeline: missing values,
timestamp parsing, and the transport encoding used for free text
between the Redmine source and the warehouse sink.
"""

import base64
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

# Placeholder written instead of subjects, descriptions, attachments and notes
REDACTED = "[REDACTED]"


def is_missing(value: Any) -> bool:
    """True for None, NaN/NaT and empty strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ''
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def parse_int(value: Any) -> Optional[int]:
    """Parse an integer id stored as text (journal values are VARCHAR)."""
    if is_missing(value):
        return None
    try:
        return int(float(str(value).strip()))
    except (ValueError, TypeError):
        return None


def parse_timestamp(value: Any, format: str = None) -> Optional[datetime]:
    """
    Parse timestamp from various formats.

    Args:
        value: Value to parse
        format: Expected format string (optional)

    Returns:
        Parsed datetime or None
    """
    if is_missing(value):
        return None

    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    if format:
        return datetime.strptime(str(value), format)

    formats = [
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y-%m-%d %H:%M:%S.%f",
        "%Y-%m-%d",
    ]
    for fmt in formats:
        try:
            return datetime.strptime(str(value), fmt)
        except ValueError:
            continue
    return None


def parse_date(value: Any) -> Optional[date]:
    """Parse a calendar day (YYYY-MM-DD or anything parse_timestamp accepts)."""
    ts = parse_timestamp(value)
    return ts.date() if ts else None


def encode_transport(value: Any) -> Optional[str]:
    """
    Encode a text value for transport to the sink.

    Values are base64 encoded from UTF-8 so that arbitrary bytes survive
    the trip regardless of source charset. Empty values map to None, the
    absence marker, never to an encoded empty string.

    Args:
        value: Text (or anything with a sensible str()) to encode

    Returns:
        Base64 string or None
    """
    if is_missing(value):
        return None
    if isinstance(value, bytes):
        raw = value
    elif isinstance(value, (datetime, date)):
        raw = value.isoformat().encode('utf-8')
    else:
        raw = str(value).encode('utf-8')
    if not raw:
        return None
    return base64.b64encode(raw).decode('ascii')


def decode_transport(value: Optional[str]) -> Optional[str]:
    """Inverse of encode_transport."""
    if is_missing(value):
        return None
    return base64.b64decode(value).decode('utf-8')


def generate_batch_id() -> str:
    """
    Generate a unique batch ID based on current timestamp.

    Returns:
        Batch ID string
    """
    return datetime.now().strftime("%Y%m%d_%H%M%S")
