"""Request/response format variants for the review service.

The engine talks to either an OpenAI-compatible chat completion endpoint or a
custom endpoint that accepts the files and answers with an issues object.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from agent_review.api.prompts import (
    build_continuation_request,
    build_custom_request,
    build_openai_request,
)
from agent_review.errors import ConfigError
from agent_review.models.findings import Diagnostic, Finding
from agent_review.models.units import BatchFile
from agent_review.parsing.response_parser import (
    ParseResult,
    ResponseParseError,
    findings_from_payload,
    parse_content,
)

if TYPE_CHECKING:
    from agent_review.config import ApiSettings

logger = logging.getLogger(__name__)


class ResponseFormat(ABC):
    """A wire format: how to build requests and read responses."""

    name: str = "base"

    @abstractmethod
    def build_request(
        self,
        files: Sequence[BatchFile],
        snippet_mode: bool = False,
        diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
    ) -> dict[str, Any]:
        """Build the request body for a batch."""

    @abstractmethod
    def build_continuation(
        self,
        base_body: dict[str, Any],
        partial_content: str,
        parsed: Sequence[Finding],
    ) -> dict[str, Any] | None:
        """Build a follow-up request for a truncated response, or None if the format has none."""

    @abstractmethod
    def parse(self, payload: Any) -> ParseResult:
        """Turn a decoded response payload into findings."""


class OpenAIFormat(ResponseFormat):
    """OpenAI-compatible chat completions."""

    name = "openai"

    def __init__(
        self,
        model: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 8000,
    ) -> None:
        self.model = model
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_request(
        self,
        files: Sequence[BatchFile],
        snippet_mode: bool = False,
        diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
    ) -> dict[str, Any]:
        return build_openai_request(
            files,
            model=self.model,
            system_prompt=self.system_prompt,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            snippet_mode=snippet_mode,
            diagnostics_by_file=diagnostics_by_file,
        )

    def build_continuation(
        self,
        base_body: dict[str, Any],
        partial_content: str,
        parsed: Sequence[Finding],
    ) -> dict[str, Any] | None:
        return build_continuation_request(base_body, partial_content, parsed)

    def parse(self, payload: Any) -> ParseResult:
        try:
            choice = payload["choices"][0]
            content = choice["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ResponseParseError(f"Unexpected chat completion payload: {e!r}") from e
        if not isinstance(content, str):
            raise ResponseParseError("Chat completion content is not text")

        result = parse_content(content)
        usage = payload.get("usage") or {}
        result.prompt_tokens = int(usage.get("prompt_tokens") or 0)
        result.completion_tokens = int(usage.get("completion_tokens") or 0)
        if choice.get("finish_reason") == "length" and not result.truncated:
            logger.debug("finish_reason=length but payload parsed completely")
        return result


class CustomFormat(ResponseFormat):
    """Custom endpoint: `{"files": [...]}` in, `{"issues": [...]}` out."""

    name = "custom"

    def build_request(
        self,
        files: Sequence[BatchFile],
        snippet_mode: bool = False,
        diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
    ) -> dict[str, Any]:
        return build_custom_request(files)

    def build_continuation(
        self,
        base_body: dict[str, Any],
        partial_content: str,
        parsed: Sequence[Finding],
    ) -> dict[str, Any] | None:
        return None

    def parse(self, payload: Any) -> ParseResult:
        if isinstance(payload, str):
            result = parse_content(payload)
            # No continuation protocol, so whatever was salvaged is final
            result.truncated = False
            return result
        return ParseResult(findings=findings_from_payload(payload))


FORMATS = {
    OpenAIFormat.name: OpenAIFormat,
    CustomFormat.name: CustomFormat,
}


def get_format(settings: "ApiSettings") -> ResponseFormat:
    """Instantiate the format named by `api_format`.

    Raises:
        ConfigError: If the format name is unknown
    """
    if settings.api_format == OpenAIFormat.name:
        return OpenAIFormat(
            model=settings.model,
            system_prompt=settings.system_prompt,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
        )
    if settings.api_format == CustomFormat.name:
        return CustomFormat()
    raise ConfigError(
        f"Unknown api_format {settings.api_format!r}; expected one of {sorted(FORMATS)}"
    )
