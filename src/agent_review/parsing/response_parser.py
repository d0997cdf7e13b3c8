"""Service response parsing and truncation recovery.

Turns raw model output into findings. When the output was cut off (the
service hit its token limit), complete issue objects before the cut are
salvaged and the caller is told a continuation call is needed.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from agent_review.errors import AgentReviewError
from agent_review.models.findings import AI_RULE, Finding, Severity

logger = logging.getLogger(__name__)

ISSUE_KEYS = ("issues", "findings")

_SEVERITY_ALIASES = {
    "error": Severity.ERROR,
    "critical": Severity.ERROR,
    "warning": Severity.WARNING,
    "info": Severity.INFO,
    "suggestion": Severity.INFO,
    "nitpick": Severity.INFO,
}

_TRUNCATION_PATTERNS = [
    re.compile(r"unterminated string", re.IGNORECASE),
    re.compile(r"unexpected end", re.IGNORECASE),
    re.compile(r"end of (?:json|data|input)", re.IGNORECASE),
]

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_ISSUES_ARRAY = re.compile(r'"(?:issues|findings)"\s*:\s*\[')
_VALID_ESCAPES = set('"\\/bfnrtu')


class ResponseParseError(AgentReviewError):
    """Raised when a response holds no usable structured output."""

    pass


class NoExtractableContent(ResponseParseError):
    """Raised when a truncated response contains no complete finding."""

    pass


@dataclass
class ParseResult:
    """Findings parsed from one response."""

    findings: list[Finding] = field(default_factory=list)
    truncated: bool = False
    content: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0


def strip_code_fence(text: str) -> str:
    """Strip markdown code fences, including an unclosed opening fence."""
    cleaned = text.strip()
    match = _FENCE.search(cleaned)
    if match:
        return match.group(1).strip()
    if cleaned.startswith("```"):
        # Opening fence only: the response was cut before the closing one
        newline = cleaned.find("\n")
        return "" if newline == -1 else cleaned[newline + 1 :].strip()
    return cleaned


def is_content_truncated(content: str) -> bool:
    """Whether content ends inside an open object, array or string."""
    stack: list[str] = []
    in_string = False
    escape_next = False
    for char in content:
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            stack.append(char)
        elif char in "}]" and stack:
            stack.pop()
    return in_string or bool(stack)


def is_truncation_error(error: json.JSONDecodeError, content: str) -> bool:
    """Whether a decode error looks like the input simply ran out."""
    if any(pattern.search(error.msg) for pattern in _TRUNCATION_PATTERNS):
        return True
    return error.pos >= len(content.rstrip())


def repair_escapes(text: str) -> str:
    """Double backslashes inside strings that don't start a valid escape.

    Models often echo Windows paths such as ``C:\\src\\app.py`` without
    escaping them.
    """
    result: list[str] = []
    in_string = False
    escape_next = False
    for i, char in enumerate(text):
        if escape_next:
            result.append(char)
            escape_next = False
            continue
        if char == "\\" and in_string:
            next_char = text[i + 1] if i + 1 < len(text) else ""
            if next_char in _VALID_ESCAPES and next_char:
                result.append(char)
                escape_next = True
            else:
                result.append("\\\\")
            continue
        if char == '"':
            in_string = not in_string
        result.append(char)
    return "".join(result)


def _loads_lenient(text: str) -> Any:
    """json.loads, retrying once after escape repair."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return json.loads(repair_escapes(text))


def extract_complete_objects(content: str) -> list[dict[str, Any]]:
    """Collect complete objects from the issues array of a truncated payload.

    The trailing object cut off by truncation is discarded.
    """
    match = _ISSUES_ARRAY.search(content)
    if not match:
        return []

    objects: list[dict[str, Any]] = []
    depth = 0
    start = -1
    in_string = False
    escape_next = False
    for i in range(match.end(), len(content)):
        char = content[i]
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            if depth == 0:
                start = i
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start != -1:
                try:
                    candidate = _loads_lenient(content[start : i + 1])
                except json.JSONDecodeError as e:
                    logger.debug(f"Skipping unparseable issue object: {e}")
                else:
                    if isinstance(candidate, dict):
                        objects.append(candidate)
                start = -1
        elif char == "]" and depth == 0:
            break
    return objects


def extract_first_object(text: str) -> Any | None:
    """Return the first balanced JSON object embedded in text, if any."""
    first = text.find("{")
    if first == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i in range(first, len(text)):
        char = text[i]
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                try:
                    return _loads_lenient(text[first : i + 1])
                except json.JSONDecodeError:
                    logger.debug("Embedded JSON object failed to parse")
                    return None
    return None


def finding_from_dict(raw: dict[str, Any]) -> Finding:
    """Convert one raw issue object into a Finding.

    Raises:
        KeyError: If `file` or `message` is missing
        ValueError: If a field has an unusable value
        TypeError: If a field has the wrong type
    """
    file_path = str(raw["file"]).strip()
    message = str(raw["message"]).strip()
    if not file_path or not message:
        raise ValueError("file and message must be non-empty")

    severity_raw = str(raw.get("severity", "warning")).lower().strip()
    if severity_raw not in _SEVERITY_ALIASES:
        raise ValueError(f"unknown severity {severity_raw!r}")

    snippet = raw.get("snippet")
    return Finding(
        file=file_path,
        line=max(1, int(raw.get("line") or 1)),
        column=max(1, int(raw.get("column") or 1)),
        message=message,
        rule=AI_RULE,
        severity=_SEVERITY_ALIASES[severity_raw],
        snippet=str(snippet) if snippet else None,
    )


def findings_from_items(items: list[Any]) -> list[Finding]:
    """Convert raw issue objects, skipping ones that don't validate."""
    findings = []
    for raw in items:
        if not isinstance(raw, dict):
            logger.warning(f"Skipping non-object issue entry: {raw!r}")
            continue
        try:
            findings.append(finding_from_dict(raw))
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to parse finding: {e}, raw: {raw}")
    return findings


def findings_from_payload(data: Any) -> list[Finding]:
    """Read the issues list out of a parsed payload."""
    if not isinstance(data, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(data).__name__}")
    for key in ISSUE_KEYS:
        if key in data:
            items = data[key]
            if not isinstance(items, list):
                raise ResponseParseError(f'"{key}" must be a list')
            return findings_from_items(items)
    raise ResponseParseError('Response has no "issues" array')


def parse_content(raw: str) -> ParseResult:
    """Parse raw model output into findings.

    Args:
        raw: Text content returned by the service

    Returns:
        ParseResult; `truncated` is set when only a prefix could be salvaged

    Raises:
        NoExtractableContent: If truncated and no complete issue was found
        ResponseParseError: If no JSON object could be recovered
    """
    content = strip_code_fence(raw)
    if not content:
        raise ResponseParseError("Empty response content")

    try:
        return ParseResult(findings=findings_from_payload(json.loads(content)), content=content)
    except json.JSONDecodeError as e:
        decode_error = e
        logger.debug(f"Strict JSON parse failed: {e}")

    try:
        data = json.loads(repair_escapes(content))
    except json.JSONDecodeError:
        pass
    else:
        logger.debug("Parsed response after escape repair")
        return ParseResult(findings=findings_from_payload(data), content=content)

    if is_content_truncated(content) or is_truncation_error(decode_error, content):
        logger.warning("Response looks truncated (token limit?); salvaging complete issues")
        findings = findings_from_items(extract_complete_objects(content))
        if not findings:
            raise NoExtractableContent(
                "Response was truncated and contained no complete issue object"
            )
        return ParseResult(findings=findings, truncated=True, content=content)

    data = extract_first_object(content)
    if data is None:
        raise ResponseParseError(f"Could not extract a JSON object from response: {decode_error}")
    return ParseResult(findings=findings_from_payload(data), content=content)


def dedupe_by_identity(findings: list[Finding]) -> list[Finding]:
    """Drop repeated (file, line, message) findings, first occurrence wins."""
    seen: set[tuple[str, int, str]] = set()
    unique = []
    for finding in findings:
        if finding.identity in seen:
            continue
        seen.add(finding.identity)
        unique.append(finding)
    return unique


def merge_continuation(partial: list[Finding], continuation: ParseResult) -> list[Finding]:
    """Combine findings from a truncated response and its continuation.

    A cleanly parsed continuation that already covers every partial finding
    replaces the partial list. Otherwise both lists are unioned.
    """
    if not continuation.truncated:
        covered = {f.identity for f in continuation.findings}
        if all(f.identity in covered for f in partial):
            return dedupe_by_identity(continuation.findings)
    return dedupe_by_identity([*partial, *continuation.findings])
