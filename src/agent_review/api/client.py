"""HTTP client for the review service."""

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from agent_review.api.errors import ErrorClass, ReviewApiError, classify_error

logger = logging.getLogger(__name__)


class ReviewService(Protocol):
    """Anything that can send a request body and return the decoded payload."""

    async def send(self, body: dict[str, Any]) -> Any: ...


@dataclass
class ClientConfig:
    """Configuration for the review service client."""

    endpoint: str
    api_key: str = ""
    timeout: float = 30.0


class ReviewApiClient:
    """Client for an OpenAI-compatible or custom review endpoint."""

    def __init__(
        self,
        config: ClientConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Endpoint, key and timeout
            transport: Optional transport override (used by tests)
        """
        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=config.timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "ReviewApiClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def send(self, body: dict[str, Any]) -> Any:
        """POST a request body to the endpoint.

        Args:
            body: JSON request body

        Returns:
            Decoded JSON response

        Raises:
            ReviewApiError: Classified failure (size, rate limit, network, other)
        """
        logger.debug(f"POST {self.config.endpoint} ({len(str(body))} chars)")
        try:
            response = await self._client.post(self.config.endpoint, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_error(e) from e

        try:
            return response.json()
        except ValueError as e:
            raise ReviewApiError(
                f"Response is not JSON: {response.text[:200]}",
                ErrorClass.PARSE,
                response.status_code,
            ) from e
