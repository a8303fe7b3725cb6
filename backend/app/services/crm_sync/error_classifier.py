"""
Error Classifier for CRM Sync.

Maps a failure (exception, message, HTTP status) to a typed category
with a recoverability verdict. Structured information wins: an HTTP
status or a typed exception is trusted before the message text is
inspected.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from app.core.interfaces.crm import CRMRequestError, ErrorType


DEFAULT_RATE_LIMIT_RETRY_AFTER = 60.0
DEFAULT_NETWORK_RETRY_AFTER = 5.0

# Checked in order, first match wins
ERROR_PATTERNS: list[tuple[ErrorType, list[re.Pattern]]] = [
    (ErrorType.RATE_LIMIT, [
        re.compile(r"rate limit", re.IGNORECASE),
        re.compile(r"too many requests", re.IGNORECASE),
        re.compile(r"retry after", re.IGNORECASE),
    ]),
    (ErrorType.AUTHENTICATION, [
        re.compile(r"api key", re.IGNORECASE),
        re.compile(r"invalid.*token", re.IGNORECASE),
        re.compile(r"unauthorized", re.IGNORECASE),
        re.compile(r"authentication failed", re.IGNORECASE),
    ]),
    (ErrorType.NETWORK, [
        re.compile(r"network timeout", re.IGNORECASE),
        re.compile(r"connection failed", re.IGNORECASE),
        re.compile(r"failed to connect", re.IGNORECASE),
        re.compile(r"timeout", re.IGNORECASE),
        re.compile(r"timed out", re.IGNORECASE),
    ]),
    (ErrorType.DATABASE, [
        re.compile(r"database connection", re.IGNORECASE),
        re.compile(r"connection lost", re.IGNORECASE),
        re.compile(r"database.*error", re.IGNORECASE),
        re.compile(r"sqlalchemy", re.IGNORECASE),
    ]),
    (ErrorType.VALIDATION, [
        re.compile(r"invalid.*format", re.IGNORECASE),
        re.compile(r"validation failed", re.IGNORECASE),
        re.compile(r"required field", re.IGNORECASE),
    ]),
]

CONFLICT_PATTERNS = [
    re.compile(r"modified by another", re.IGNORECASE),
    re.compile(r"conflict", re.IGNORECASE),
    re.compile(r"concurrent", re.IGNORECASE),
    re.compile(r"version mismatch", re.IGNORECASE),
]

USER_MESSAGES = {
    ErrorType.RATE_LIMIT: "Pipedrive API rate limit exceeded. Please wait a moment and try again.",
    ErrorType.AUTHENTICATION: "Pipedrive API key is invalid or expired. Please update your API key.",
    ErrorType.NETWORK: "Network connection issue. Please check your internet connection and try again.",
    ErrorType.DATABASE: "Database connection issue. Please try again in a moment.",
    ErrorType.VALIDATION: "Data validation error. Please check your data and try again.",
    ErrorType.UNKNOWN: "An unexpected error occurred. Please try again or contact support.",
}

NON_RECOVERABLE = {ErrorType.AUTHENTICATION, ErrorType.VALIDATION}


@dataclass
class ClassifiedError:
    """A failure with its category and recovery hints."""
    type: ErrorType
    message: str
    recoverable: bool
    retry_after: Optional[float] = None
    user_message: str = ""
    status_code: Optional[int] = None


def _build(
    error_type: ErrorType,
    message: str,
    status_code: Optional[int] = None,
    retry_after: Optional[float] = None,
) -> ClassifiedError:
    if error_type == ErrorType.RATE_LIMIT:
        retry_after = retry_after if retry_after is not None else DEFAULT_RATE_LIMIT_RETRY_AFTER
    elif error_type == ErrorType.NETWORK:
        retry_after = DEFAULT_NETWORK_RETRY_AFTER
    else:
        retry_after = None

    return ClassifiedError(
        type=error_type,
        message=message,
        recoverable=error_type not in NON_RECOVERABLE,
        retry_after=retry_after,
        user_message=USER_MESSAGES[error_type],
        status_code=status_code,
    )


def classify_error(
    message: str,
    status_code: Optional[int] = None,
    retry_after: Optional[float] = None,
) -> ClassifiedError:
    """
    Classify a failure from its message and optional HTTP status.

    Args:
        message: Error message / description
        status_code: HTTP status of the remote response, if any
        retry_after: Seconds from a Retry-After header, if any

    Returns:
        ClassifiedError

    Example:
        >>> classify_error("Rate limit exceeded").type
        <ErrorType.RATE_LIMIT: 'RATE_LIMIT'>
        >>> classify_error("API key expired").recoverable
        False
    """
    message = message or ""

    if status_code == 429:
        return _build(ErrorType.RATE_LIMIT, message, status_code, retry_after)
    if status_code == 401:
        return _build(ErrorType.AUTHENTICATION, message, status_code)

    for error_type, patterns in ERROR_PATTERNS:
        if any(pattern.search(message) for pattern in patterns):
            return _build(error_type, message, status_code, retry_after)

    return _build(ErrorType.UNKNOWN, message, status_code)


def classify_exception(exc: BaseException) -> ClassifiedError:
    """
    Classify a raised exception.

    Typed exceptions are mapped directly; anything else falls back to
    message sniffing.
    """
    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, CRMRequestError):
        if exc.error_type is not None:
            return _build(exc.error_type, message, exc.status_code, exc.retry_after)
        return classify_error(message, exc.status_code, exc.retry_after)

    if isinstance(exc, SQLAlchemyError):
        return _build(ErrorType.DATABASE, message)

    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return _build(ErrorType.NETWORK, message)

    return classify_error(message)


def is_conflict_error(message: Optional[str], status_code: Optional[int] = None) -> bool:
    """True if the remote side rejected a write because the record changed concurrently."""
    if status_code == 409:
        return True
    if not message:
        return False
    return any(pattern.search(message) for pattern in CONFLICT_PATTERNS)
