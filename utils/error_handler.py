"""
Error taxonomy and logging setup for the ShimCache timeline tools.

Decoders and the correlator raise the exceptions defined here instead of
printing and carrying on, so a caller working through a batch of hives can
report a failure for one file and move on to the next.
"""

import logging
import sys
from typing import Optional, Type


class ShimTimelineError(Exception):
    """Base exception for every error raised by this project."""

    def __init__(self, message: str, details: Optional[str] = None):
        """
        Initialize the error.

        Args:
            message: Short, user-facing error message
            details: Technical details for logging
        """
        super().__init__(message)
        self.message = message
        self.details = details or message


class HiveLoadError(ShimTimelineError):
    """Raised when a registry hive file cannot be opened."""

    def __init__(self, message: str, hive_path: Optional[str] = None,
                 original_error: Optional[Exception] = None):
        details = message
        if hive_path:
            details += f"\nHive: {hive_path}"
        if original_error:
            details += f"\nOriginal error: {original_error}"
        super().__init__(message, details)
        self.hive_path = hive_path
        self.original_error = original_error


class DecodeError(ShimTimelineError):
    """Base exception for ShimCache and AmCache decoding failures."""
    pass


class UnsupportedVersionError(DecodeError):
    """The ShimCache layout was recognised (or not) but cannot be decoded."""

    def __init__(self, version):
        super().__init__(f"Unsupported shimcache version: {version}")
        self.version = version


class TruncatedError(DecodeError):
    """A field extends past the end of the buffer."""

    def __init__(self, position: Optional[int], offset: int, size: int, buffer_size: int):
        where = "header" if position is None else f"entry position {position}"
        super().__init__(
            f"Shimcache data truncated while reading {where}",
            f"Needed {size} bytes at offset {offset}, buffer holds {buffer_size} bytes"
        )
        self.position = position
        self.offset = offset
        self.size = size


class MalformedStringError(DecodeError):
    """UTF-16 data with an odd byte count or invalid code units."""

    def __init__(self, position: Optional[int], reason: str):
        where = "header" if position is None else f"entry position {position}"
        super().__init__(f"Malformed UTF-16 string at {where}: {reason}")
        self.position = position


class MissingFieldError(DecodeError):
    """A required registry key or value is absent."""

    def __init__(self, key_path: str, field: Optional[str] = None):
        if field is None:
            message = f"Registry key \"{key_path}\" not found"
        else:
            message = f"Value \"{field}\" not found under key \"{key_path}\""
        super().__init__(message)
        self.key_path = key_path
        self.field = field


class TypeMismatchError(DecodeError):
    """A registry value has an unexpected type."""

    def __init__(self, key_path: str, field: str, expected: str, actual: str):
        super().__init__(
            f"Value \"{field}\" under key \"{key_path}\" was not of type {expected} (got {actual})"
        )
        self.key_path = key_path
        self.field = field
        self.expected = expected
        self.actual = actual


class InvalidTimestampError(DecodeError):
    """A timestamp could not be converted to a datetime."""
    pass


class CorrelationError(ShimTimelineError):
    """Base exception for timeline correlation failures."""
    pass


class NoPatternsError(CorrelationError):
    """The caller supplied no identification patterns."""

    def __init__(self):
        super().__init__("No regex patterns defined for matching shimcache entries")


class PatternCompileError(CorrelationError):
    """A caller-supplied pattern is not a valid regular expression."""

    def __init__(self, pattern: str, original_error: Exception):
        super().__init__(
            f"Invalid regex pattern \"{pattern}\": {original_error}",
        )
        self.pattern = pattern
        self.original_error = original_error


class ErrorHandler:
    """
    Logging setup plus consistent error reporting.

    Output goes to stderr so that timeline rows written to stdout stay clean.
    """

    def __init__(self, logger_name: Optional[str] = 'shim_timeline'):
        """
        Initialize the error handler with a logger.

        Args:
            logger_name: Name to use for the logger, None for the root logger
        """
        self.logger = logging.getLogger(logger_name)

    def setup_logging(self, log_level: int = logging.INFO, log_file: Optional[str] = None):
        """
        Route log records to stderr, and optionally to a file.

        Args:
            log_level: Minimum level passed to the handlers
            log_file: Optional path that receives a copy of every record
        """
        # Repeated CLI runs in one process must not stack handlers
        self.logger.handlers = []
        self.logger.setLevel(log_level)

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if log_file:
            try:
                file_handler = logging.FileHandler(log_file)
            except OSError as e:
                self.logger.error(f"Failed to set up file logging: {e}")
            else:
                file_handler.setLevel(log_level)
                file_handler.setFormatter(formatter)
                self.logger.addHandler(file_handler)

    def handle_error(self,
                     exception: Optional[BaseException] = None,
                     message: str = "An error occurred",
                     log_level: int = logging.ERROR,
                     raise_exception: bool = True) -> bool:
        """
        Handle an error with consistent logging and optional re-raising.

        Args:
            exception: The exception that was caught (if any)
            message: Custom error message
            log_level: Logging level for the error
            raise_exception: Whether to re-raise the exception

        Returns:
            bool: Always returns False to allow for early returns
        """
        full_message = message
        if exception is not None:
            full_message = f"{message}: {exception}"
            if isinstance(exception, ShimTimelineError) and exception.details != exception.message:
                self.logger.debug(exception.details)

        # Tracebacks only for errors we did not raise ourselves
        show_traceback = exception is not None and not isinstance(exception, ShimTimelineError)
        self.logger.log(log_level, full_message, exc_info=exception if show_traceback else None)

        if raise_exception and exception is not None:
            raise exception

        return False

    def error_context(self,
                      exception: Type[BaseException] = ShimTimelineError,
                      message: str = "An error occurred in context",
                      log_level: int = logging.ERROR,
                      reraise: bool = True):
        """
        Wrap one unit of work, typically the analysis of a single hive.

        Args:
            exception: Exception type that counts as a failure of the unit
            message: Prefix for the logged failure
            log_level: Level of the logged failure
            reraise: False to log and carry on with the next unit

        Returns:
            Context manager whose ``failed`` attribute tells whether the block raised
        """
        class UnitContext:
            def __init__(self, handler, exception, message, log_level, reraise):
                self.handler = handler
                self.exception = exception
                self.message = message
                self.log_level = log_level
                self.reraise = reraise
                self.failed = False

            def __enter__(self):
                return self

            def __exit__(self, exc_type, exc_val, exc_tb):
                if exc_type is not None and issubclass(exc_type, self.exception):
                    self.failed = True
                    self.handler.handle_error(
                        exc_val,
                        self.message,
                        self.log_level,
                        False
                    )
                    return not self.reraise
                return False

        return UnitContext(self, exception, message, log_level, reraise)
