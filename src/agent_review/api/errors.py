"""Service error taxonomy and classification."""

import re
from enum import Enum

import httpx

from agent_review.errors import AgentReviewError

_TOO_LONG = re.compile(
    r"(context|context_length_exceeded|too many tokens|max(?:imum)? context"
    r"|prompt too long|request too large|payload too large|too long)"
)


class ErrorClass(Enum):
    """Why a service call failed."""

    SIZE_REJECTED = "size_rejected"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_NETWORK = "transient_network"
    OTHER = "other"
    PARSE = "parse"

    @property
    def retryable(self) -> bool:
        """Whether the same request may succeed after a backoff."""
        return self in (ErrorClass.RATE_LIMITED, ErrorClass.TRANSIENT_NETWORK, ErrorClass.PARSE)


class ReviewApiError(AgentReviewError):
    """A classified failure returned by the review service."""

    def __init__(
        self,
        message: str,
        error_class: ErrorClass = ErrorClass.OTHER,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_class = error_class
        self.status_code = status_code


def is_context_too_long(status_code: int | None, text: str) -> bool:
    """Whether a response says the request exceeded the service's size limit."""
    if status_code == 413:
        return True
    return status_code == 400 and bool(_TOO_LONG.search(text.lower()))


def classify_status(status_code: int, text: str = "") -> ErrorClass:
    """Map an HTTP status (and body text) to an error class."""
    if is_context_too_long(status_code, text):
        return ErrorClass.SIZE_REJECTED
    if status_code == 429:
        return ErrorClass.RATE_LIMITED
    if status_code >= 500:
        return ErrorClass.TRANSIENT_NETWORK
    return ErrorClass.OTHER


def classify_error(error: Exception) -> ReviewApiError:
    """Wrap an arbitrary send failure in a classified ReviewApiError."""
    if isinstance(error, ReviewApiError):
        return error
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        status = response.status_code
        error_class = classify_status(status, f"{error} {response.text}")
        return ReviewApiError(f"HTTP {status}: {response.text[:200]}", error_class, status)
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return ReviewApiError(
            f"Network error: {error!r}", ErrorClass.TRANSIENT_NETWORK
        )
    return ReviewApiError(str(error) or type(error).__name__, ErrorClass.OTHER)
