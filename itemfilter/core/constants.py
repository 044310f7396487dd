"""
itemfilter Foundation: Constants and Error Codes

This module provides system-wide constants and error codes shared by the
rule pipeline, the configuration layer and the CLI.
"""
from enum import IntEnum

# Version information
ITEMFILTER_VERSION = "1.0.0"


# Error codes (also used as CLI exit codes)
class ErrorCode(IntEnum):
    """Standardized error codes for itemfilter operations."""

    SUCCESS = 0  # Operation completed successfully
    INVALID_INPUT = 1  # Malformed rule, item or configuration
    NOT_FOUND = 2  # Filter, item or config file doesn't exist
    PERMISSION_DENIED = 3  # File not readable
    INTERNAL_ERROR = 6  # Bug in itemfilter


# Rule file format
COMMENT_MARKER = "//"
FILE_ENCODING = "utf-8-sig"  # Tolerates a leading BOM
FILE_ERRORS = "replace"  # Undecodable bytes become U+FFFD

# Item attribute named in match diagnostics
DEFAULT_IDENTITY_FIELD = "base_name"

# Filter watching
DEFAULT_WATCH_INTERVAL = 1.0  # seconds
WATCH_JOIN_TIMEOUT = 2.0  # seconds


class FilterError(Exception):
    """Base class for rule filter errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.INVALID_INPUT):
        """Initialize FilterError.

        Args:
            message: Error message
            error_code: Associated error code
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
