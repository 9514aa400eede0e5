"""
Time format conversion utilities for forensic analysis.

This module converts between Windows FILETIME values, registry date strings,
Unix timestamps and timezone-aware UTC datetime objects.
"""

import datetime
from typing import Optional

from .error_handler import InvalidTimestampError

# Windows FILETIME epoch (January 1, 1601)
WINDOWS_EPOCH = datetime.datetime(1601, 1, 1, 0, 0, 0, tzinfo=datetime.timezone.utc)
# Unix epoch (January 1, 1970)
UNIX_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

# 100-nanosecond intervals per microsecond
FILETIME_TICKS_PER_MICROSECOND = 10
FILETIME_TICKS_PER_SECOND = 10_000_000

# Format used by AmCache InstallDate and LinkDate values
REGISTRY_DATE_FORMAT = '%m/%d/%Y %H:%M:%S'


def filetime_to_datetime(filetime: int) -> Optional[datetime.datetime]:
    """
    Convert Windows FILETIME (64-bit) to UTC datetime.

    A zero FILETIME means "no timestamp" and yields None rather than 1601.

    Args:
        filetime: 100-nanosecond intervals since 1601-01-01

    Returns:
        datetime: UTC datetime object (sub-microsecond ticks are truncated), or None

    Raises:
        InvalidTimestampError: If the value does not fit in a datetime
    """
    if filetime == 0:
        return None
    try:
        return WINDOWS_EPOCH + datetime.timedelta(
            microseconds=filetime // FILETIME_TICKS_PER_MICROSECOND
        )
    except OverflowError:
        raise InvalidTimestampError(f"FILETIME value {filetime} is out of range")


def datetime_to_filetime(dt: datetime.datetime) -> int:
    """
    Convert UTC datetime to Windows FILETIME (64-bit).

    Args:
        dt: datetime object (naive values are assumed to be UTC)

    Returns:
        int: Windows FILETIME as 64-bit integer
    """
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=datetime.timezone.utc)

    delta = dt - WINDOWS_EPOCH
    microseconds = (delta.days * 86400 + delta.seconds) * 1000000 + delta.microseconds
    return microseconds * FILETIME_TICKS_PER_MICROSECOND


def unix_timestamp_to_datetime(timestamp: int) -> Optional[datetime.datetime]:
    """
    Convert Unix timestamp to UTC datetime; zero means absent.

    Args:
        timestamp: Unix timestamp (seconds since 1970-01-01)

    Returns:
        datetime: UTC datetime object, or None for zero
    """
    if timestamp == 0:
        return None
    try:
        return UNIX_EPOCH + datetime.timedelta(seconds=timestamp)
    except OverflowError:
        raise InvalidTimestampError(f"Unix timestamp {timestamp} is out of range")


def parse_registry_date(value: str) -> datetime.datetime:
    """
    Parse a registry date string such as ``"10/17/2021 13:45:02"``.

    Args:
        value: Date string in M/D/Y H:M:S form

    Returns:
        datetime: UTC datetime object

    Raises:
        InvalidTimestampError: If the string does not match the format
    """
    try:
        naive = datetime.datetime.strptime(value.strip(), REGISTRY_DATE_FORMAT)
    except ValueError as e:
        raise InvalidTimestampError(f"Invalid registry date \"{value}\": {e}")
    return naive.replace(tzinfo=datetime.timezone.utc)


def ensure_utc(dt: datetime.datetime) -> datetime.datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def format_rfc3339(dt: Optional[datetime.datetime]) -> str:
    """
    Format a datetime as RFC-3339 with a ``Z`` suffix.

    Args:
        dt: datetime to format, or None

    Returns:
        str: e.g. ``2021-10-17T13:45:02.123456Z``; empty string for None
    """
    if dt is None:
        return ""
    dt = ensure_utc(dt)
    text = dt.strftime('%Y-%m-%dT%H:%M:%S')
    if dt.microsecond:
        text += f".{dt.microsecond:06d}"
    return text + "Z"


def format_filetime_rfc3339(filetime: Optional[int]) -> str:
    """
    Format raw FILETIME ticks as RFC-3339 without losing 100ns resolution.

    Values that are whole microseconds format exactly like
    ``format_rfc3339``; otherwise a 7-digit fraction is written.

    Args:
        filetime: 100-nanosecond intervals since 1601-01-01, or None/0

    Returns:
        str: e.g. ``2020-01-01T02:40:00.0000007Z``; empty string when absent
    """
    if not filetime:
        return ""
    if filetime % FILETIME_TICKS_PER_MICROSECOND == 0:
        return format_rfc3339(filetime_to_datetime(filetime))
    seconds, ticks = divmod(filetime, FILETIME_TICKS_PER_SECOND)
    try:
        whole = WINDOWS_EPOCH + datetime.timedelta(seconds=seconds)
    except OverflowError:
        raise InvalidTimestampError(f"FILETIME value {filetime} is out of range")
    return f"{whole.strftime('%Y-%m-%dT%H:%M:%S')}.{ticks:07d}Z"
