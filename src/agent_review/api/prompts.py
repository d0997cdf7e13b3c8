"""Prompt and request body builders for the review service."""

import os
from collections.abc import Mapping, Sequence
from typing import Any

from agent_review.models.findings import Diagnostic, Finding
from agent_review.models.units import BatchFile

DEFAULT_SYSTEM_PROMPT = """You are an experienced code reviewer. Analyze the code in depth, \
find potential problems and give concrete, actionable suggestions.

Focus on:
1. Bugs and runtime errors: undefined names, null access, type and logic errors
2. Performance: inefficient algorithms, needless loops, leaked resources
3. Security: injection, unsafe API use, leaked secrets
4. Code quality: readability, duplication, naming, error handling
"""

ISSUE_FORMAT = """Respond ONLY with valid JSON in this exact format:
{
  "issues": [
    {
      "file": "path/to/file.py",
      "line": 10,
      "column": 1,
      "snippet": "the offending source, 1-3 lines copied verbatim",
      "message": "What is wrong, why, and how to fix it",
      "severity": "error|warning|info"
    }
  ]
}

Severity:
- error: causes runtime failures, broken features or security holes
- warning: likely problems that don't break basic behaviour
- info: improvements, best practices, readability

Keep messages short so the JSON is never cut off. Always close the JSON object.
"""

CONTINUATION_PROMPT = """The previous response was truncated. Continue with the remaining issues.

Issues already parsed: {count}
{last_issue}

Rules:
1. Return only new issues, do not repeat earlier ones
2. Still return complete JSON containing only the issues array
3. If there are no more issues, return {{"issues": []}}
"""

MAX_KNOWN_DIAGNOSTICS_PER_FILE = 10

LANGUAGE_MAP = {
    "py": "python",
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "java": "java",
    "go": "go",
    "rs": "rust",
    "c": "c",
    "cpp": "cpp",
    "cs": "csharp",
    "rb": "ruby",
    "php": "php",
    "kt": "kotlin",
    "swift": "swift",
    "sh": "bash",
    "yml": "yaml",
    "yaml": "yaml",
    "json": "json",
    "html": "html",
    "css": "css",
    "vue": "vue",
    "sql": "sql",
}


def language_for(path: str) -> str:
    """Code fence language for a file path."""
    ext = os.path.splitext(path)[1].lstrip(".").lower()
    return LANGUAGE_MAP.get(ext, ext)


def build_known_diagnostics_prompt(
    diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None,
) -> str:
    """List diagnostics local tools already reported so the model skips them."""
    if not diagnostics_by_file:
        return ""
    rows = []
    for path, diagnostics in diagnostics_by_file.items():
        for item in list(diagnostics)[:MAX_KNOWN_DIAGNOSTICS_PER_FILE]:
            rows.append(f"- {path} line {item.line}: {item.message}")
    if not rows:
        return ""
    return "\n".join(["## Already reported by local tools (do not repeat)", *rows, ""])


def build_user_prompt(
    files: Sequence[BatchFile],
    snippet_mode: bool = False,
    diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
) -> str:
    """Render the review request for a batch of files."""
    files_str = "\n\n".join(
        f"### {f.path}\n```{language_for(f.path)}\n{f.content}\n```" for f in files
    )
    if snippet_mode:
        intro = (
            "Review only the changed snippets below, not whole files. "
            "Each snippet is preceded by a `# line N` marker with its line number "
            "in the current file; report `line` using those numbers."
        )
    else:
        intro = "Review the following files thoroughly."

    known = build_known_diagnostics_prompt(diagnostics_by_file)
    return f"""{intro}

{files_str}

{known}
{ISSUE_FORMAT}"""


def build_openai_request(
    files: Sequence[BatchFile],
    model: str,
    system_prompt: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 8000,
    snippet_mode: bool = False,
    diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
) -> dict[str, Any]:
    """Build an OpenAI-compatible chat completion body."""
    return {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": build_user_prompt(files, snippet_mode, diagnostics_by_file),
            },
        ],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }


def build_continuation_request(
    base_body: dict[str, Any],
    partial_content: str,
    parsed: Sequence[Finding],
) -> dict[str, Any]:
    """Replay the original messages plus the partial answer and ask for the rest."""
    if parsed:
        last = parsed[-1]
        last_issue = f"Last issue: file={last.file}, line={last.line}, message={last.message}"
    else:
        last_issue = "No complete issue has been parsed yet"

    return {
        **base_body,
        "messages": [
            *base_body["messages"],
            {"role": "assistant", "content": partial_content},
            {
                "role": "user",
                "content": CONTINUATION_PROMPT.format(count=len(parsed), last_issue=last_issue),
            },
        ],
    }


def build_custom_request(files: Sequence[BatchFile]) -> dict[str, Any]:
    """Body for custom endpoints: the files, nothing else."""
    return {"files": [{"path": f.path, "content": f.content} for f in files]}
