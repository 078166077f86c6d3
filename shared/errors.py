"""
Shared error handling for the SWR cache.
"""

import asyncio
from enum import Enum
from typing import Dict, Any, Optional

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Classification of errors stored on cache entries."""
    NETWORK = "network"
    CANCELLATION = "cancellation"
    APPLICATION = "application"
    PROGRAMMER = "programmer"


class ErrorRecord(BaseModel):
    """Standard record describing a surfaced entry error."""

    key: Optional[str] = None
    kind: ErrorKind
    code: str
    message: str
    attempts: int = 1
    details: Dict[str, Any] = {}


class CacheError(Exception):
    """Base exception for the SWR cache."""

    kind = ErrorKind.APPLICATION
    retryable = True

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_record(self, key: Optional[str] = None, attempts: int = 1) -> ErrorRecord:
        """Convert to an error record."""
        return ErrorRecord(
            key=key,
            kind=self.kind,
            code=self.code,
            message=self.message,
            attempts=attempts,
            details=self.details
        )


class ProgrammerError(CacheError):
    """Misuse of the cache API. Raised from public calls, never retried."""

    kind = ErrorKind.PROGRAMMER
    retryable = False

    def __init__(self, message: str = "Programmer error", details: Optional[Dict[str, Any]] = None):
        super().__init__("PROGRAMMER_ERROR", message, details)


class InvalidKeyError(ProgrammerError):
    """Malformed key namespace or parameters."""

    def __init__(self, message: str = "Invalid key", details: Optional[Dict[str, Any]] = None):
        CacheError.__init__(self, "INVALID_KEY", message, details)


class MissingFetchFunctionError(ProgrammerError):
    """Entry definition without a callable fetch function."""

    def __init__(self, message: str = "Missing fetch function", details: Optional[Dict[str, Any]] = None):
        CacheError.__init__(self, "MISSING_FETCH_FUNCTION", message, details)


class KeyConflictError(ProgrammerError):
    """The same key was used with two different entry variants."""

    def __init__(self, message: str = "Key conflict", details: Optional[Dict[str, Any]] = None):
        CacheError.__init__(self, "KEY_CONFLICT", message, details)


class InvalidPolicyError(ProgrammerError):
    """Policy with out-of-range values."""

    def __init__(self, message: str = "Invalid policy", details: Optional[Dict[str, Any]] = None):
        CacheError.__init__(self, "INVALID_POLICY", message, details)


class StoreClosedError(ProgrammerError):
    """Operation on a store that has been closed."""

    def __init__(self, message: str = "Store is closed", details: Optional[Dict[str, Any]] = None):
        CacheError.__init__(self, "STORE_CLOSED", message, details)


class NetworkError(CacheError):
    """Transport-level failure raised by fetch functions."""

    kind = ErrorKind.NETWORK

    def __init__(self, message: str = "Network error", details: Optional[Dict[str, Any]] = None):
        super().__init__("NETWORK_ERROR", message, details)


class ApplicationError(CacheError):
    """Application-level failure returned by fetch functions."""

    def __init__(self, message: str = "Application error", details: Optional[Dict[str, Any]] = None):
        super().__init__("APPLICATION_ERROR", message, details)


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an exception raised inside a fetch task."""
    if isinstance(error, asyncio.CancelledError):
        return ErrorKind.CANCELLATION
    if isinstance(error, CacheError):
        return error.kind
    if isinstance(error, (ConnectionError, TimeoutError, OSError)):
        return ErrorKind.NETWORK
    return ErrorKind.APPLICATION


def is_retryable(error: BaseException) -> bool:
    """Default retry predicate: everything but cancellation and programmer errors."""
    if isinstance(error, asyncio.CancelledError):
        return False
    if isinstance(error, CacheError):
        return error.retryable
    return True


def to_error_record(error: BaseException, key: Optional[str] = None, attempts: int = 1) -> ErrorRecord:
    """Build an error record for any exception."""
    if isinstance(error, CacheError):
        return error.to_record(key=key, attempts=attempts)
    return ErrorRecord(
        key=key,
        kind=classify_error(error),
        code=type(error).__name__,
        message=str(error) or repr(error),
        attempts=attempts
    )
