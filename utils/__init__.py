"""
Utility functions and helpers shared by the collectors and the timeline.
Includes the error taxonomy, logging setup and time conversions.
"""

from .error_handler import (
    ErrorHandler,
    ShimTimelineError,
    HiveLoadError,
    DecodeError,
    UnsupportedVersionError,
    TruncatedError,
    MalformedStringError,
    MissingFieldError,
    TypeMismatchError,
    InvalidTimestampError,
    CorrelationError,
    NoPatternsError,
    PatternCompileError,
)
from .time_utils import (
    filetime_to_datetime,
    datetime_to_filetime,
    unix_timestamp_to_datetime,
    parse_registry_date,
    format_rfc3339,
    format_filetime_rfc3339,
)

__all__ = [
    'ErrorHandler',
    'ShimTimelineError',
    'HiveLoadError',
    'DecodeError',
    'UnsupportedVersionError',
    'TruncatedError',
    'MalformedStringError',
    'MissingFieldError',
    'TypeMismatchError',
    'InvalidTimestampError',
    'CorrelationError',
    'NoPatternsError',
    'PatternCompileError',
    'filetime_to_datetime',
    'datetime_to_filetime',
    'unix_timestamp_to_datetime',
    'parse_registry_date',
    'format_rfc3339',
    'format_filetime_rfc3339',
]
