"""
Registry / gate error type and the error code vocabulary.

This is a leaf module with no internal dependencies.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    NOT_FRIENDS = "NOT_FRIENDS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    CONNECTION_NOT_FOUND = "CONNECTION_NOT_FOUND"
    GROUP_NOT_FOUND = "GROUP_NOT_FOUND"
    NOT_GROUP_MEMBER = "NOT_GROUP_MEMBER"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    GROUP_NOT_SUPPORTED = "GROUP_NOT_SUPPORTED"
    RATE_LIMITED = "RATE_LIMITED"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    INVALID_API_KEY = "INVALID_API_KEY"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    DUPLICATE_MESSAGE = "DUPLICATE_MESSAGE"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"


_STATUS_CODES = {
    401: ErrorCode.INVALID_API_KEY,
    403: ErrorCode.NOT_FRIENDS,
    404: ErrorCode.USER_NOT_FOUND,
    429: ErrorCode.RATE_LIMITED,
    501: ErrorCode.NOT_IMPLEMENTED,
}


def status_to_error_code(status_code: int) -> ErrorCode:
    """Map an HTTP status from the registry to an error code."""
    return _STATUS_CODES.get(status_code, ErrorCode.NETWORK_ERROR)


class MahiloError(Exception):
    """An expected failure talking to the registry.

    `code` is an ErrorCode when the registry used a known code, otherwise the
    raw string it sent.
    """

    def __init__(self, message: str, code, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"MahiloError({self.message!r}, code={self.code!r}, status_code={self.status_code!r})"


def coerce_error_code(code: str):
    """Return the ErrorCode for a registry-supplied code string, or the string itself."""
    try:
        return ErrorCode(code)
    except ValueError:
        return code
