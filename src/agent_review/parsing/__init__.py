"""Response parsing and wire formats."""

from agent_review.parsing.formats import (
    FORMATS,
    CustomFormat,
    OpenAIFormat,
    ResponseFormat,
    get_format,
)
from agent_review.parsing.response_parser import (
    NoExtractableContent,
    ParseResult,
    ResponseParseError,
    merge_continuation,
    parse_content,
)

__all__ = [
    "FORMATS",
    "CustomFormat",
    "NoExtractableContent",
    "OpenAIFormat",
    "ParseResult",
    "ResponseFormat",
    "ResponseParseError",
    "get_format",
    "merge_continuation",
    "parse_content",
]
