"""Content-addressed finding fingerprints.

A fingerprint identifies the same logical issue after lines are inserted or
removed elsewhere in the file: it hashes the rule, the root-relative path and
the normalized text around the finding, never the absolute line number.
"""

import dataclasses
import hashlib
import os
import re
from collections.abc import Iterable, Mapping

from agent_review.models.findings import Finding
from agent_review.pipeline.resolver import normalize_line_endings

_WHITESPACE = re.compile(r"\s+")


def normalize_anchor_line(line: str) -> str:
    """Trim and collapse whitespace so indentation changes don't matter."""
    return _WHITESPACE.sub(" ", line.strip())


def context_window(lines: list[str], index: int, half_window: int = 2) -> str:
    """Normalized lines around `index` joined by spaces."""
    start = max(0, index - half_window)
    end = min(len(lines) - 1, index + half_window)
    return " ".join(normalize_anchor_line(line) for line in lines[start : end + 1])


def compute_fingerprint(finding: Finding, content: str, workspace_root: str) -> str:
    """SHA-256 prefix over rule, relative path and semantic anchor.

    Returns an empty string when the content is missing or the line is out of
    range.
    """
    if not content or not workspace_root:
        return ""
    lines = normalize_line_endings(content).split("\n")
    index = finding.line - 1
    if index < 0 or index >= len(lines):
        return ""

    relative = os.path.relpath(finding.file, workspace_root) if os.path.isabs(finding.file) else finding.file
    relative = os.path.normpath(relative).replace("\\", "/")
    anchor = " ".join(
        part for part in (normalize_anchor_line(lines[index]), context_window(lines, index)) if part
    )
    payload = "\n".join([finding.rule, relative, anchor])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def attach_fingerprints(
    findings: Iterable[Finding],
    contents: Mapping[str, str],
    workspace_root: str,
) -> list[Finding]:
    """Fill in missing fingerprints from loaded file contents."""
    result = []
    for finding in findings:
        if finding.fingerprint:
            result.append(finding)
            continue
        fingerprint = compute_fingerprint(finding, contents.get(finding.file, ""), workspace_root)
        result.append(dataclasses.replace(finding, fingerprint=fingerprint or None))
    return result
