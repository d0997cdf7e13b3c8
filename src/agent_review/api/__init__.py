"""Review service client, errors and prompts."""

from agent_review.api.client import ClientConfig, ReviewApiClient, ReviewService
from agent_review.api.errors import ErrorClass, ReviewApiError, classify_error

__all__ = [
    "ClientConfig",
    "ErrorClass",
    "ReviewApiClient",
    "ReviewApiError",
    "ReviewService",
    "classify_error",
]
