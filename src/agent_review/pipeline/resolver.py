"""Position and severity resolution for reported findings."""

import dataclasses
import logging
import os
from collections.abc import Collection, Iterable, Mapping

from agent_review.models.findings import Finding, PolicyAction, Severity

logger = logging.getLogger(__name__)


def normalize_line_endings(text: str) -> str:
    """Normalize CRLF and bare CR to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def resolve_position(
    content: str,
    snippet: str | None,
    line: int,
    column: int,
    use_diff_line_numbers: bool = False,
) -> tuple[int, int]:
    """Locate a reported snippet in the file's current content.

    Args:
        content: Current file text
        snippet: Code excerpt the service quoted for the finding
        line: Reported line (1-based)
        column: Reported column (1-based)
        use_diff_line_numbers: Trust the reported position and skip the search

    Returns:
        (line, column) of the first non-blank character of the match, or the
        reported position when nothing matches
    """
    if use_diff_line_numbers or not snippet or not snippet.strip():
        return line, column

    lines = normalize_line_endings(content).split("\n")
    wanted = [part.strip() for part in normalize_line_endings(snippet).strip().split("\n")]

    for index in range(len(lines) - len(wanted) + 1):
        window = lines[index : index + len(wanted)]
        if [part.strip() for part in window] == wanted:
            first = window[0]
            return index + 1, len(first) - len(first.lstrip()) + 1

    # Fragment of a single line
    if len(wanted) == 1:
        for index, text in enumerate(lines):
            position = text.find(wanted[0])
            if position >= 0:
                return index + 1, position + 1

    return line, column


def map_severity(severity: Severity, action: PolicyAction) -> Severity:
    """Reconcile a reported severity with the configured policy action.

    | reported | block_commit | warning | log  |
    |----------|--------------|---------|------|
    | error    | error        | warning | info |
    | warning  | warning      | warning | info |
    | info     | warning      | warning | info |
    """
    if action == PolicyAction.BLOCK_COMMIT:
        return Severity.WARNING if severity == Severity.INFO else severity
    if action == PolicyAction.WARNING:
        return Severity.WARNING
    return Severity.INFO


def resolve_findings(
    findings: Iterable[Finding],
    contents: Mapping[str, str],
    action: PolicyAction,
    use_diff_line_numbers: bool = False,
) -> list[Finding]:
    """Return copies of findings with resolved positions and mapped severity."""
    resolved = []
    for finding in findings:
        line, column = finding.line, finding.column
        content = contents.get(finding.file)
        if content:
            line, column = resolve_position(
                content, finding.snippet, line, column, use_diff_line_numbers
            )
        elif finding.snippet and not use_diff_line_numbers:
            logger.debug(f"No content loaded for {finding.file}; keeping reported position")
        resolved.append(
            dataclasses.replace(
                finding,
                line=line,
                column=column,
                severity=map_severity(finding.severity, action),
            )
        )
    return resolved


def _changed_lines_index(changed_lines_by_file: Mapping[str, Collection[int]]) -> dict[str, set[int]]:
    return {os.path.normpath(path): set(lines) for path, lines in changed_lines_by_file.items()}


def filter_to_changed_lines(
    findings: Iterable[Finding],
    changed_lines_by_file: Mapping[str, Collection[int]],
) -> list[Finding]:
    """Keep only findings that sit on a changed line.

    An empty mapping means no diff is known, and everything is kept. A file
    with no entry has no changed lines.
    """
    findings = list(findings)
    if not changed_lines_by_file:
        return findings
    changed = _changed_lines_index(changed_lines_by_file)
    kept = [f for f in findings if f.line in changed.get(os.path.normpath(f.file), ())]
    if len(kept) < len(findings):
        logger.debug(f"Dropped {len(findings) - len(kept)} findings outside changed lines")
    return kept


def mark_incremental(
    findings: Iterable[Finding],
    changed_lines_by_file: Mapping[str, Collection[int]],
) -> list[Finding]:
    """Return copies with `incremental` set.

    With no diff every finding is incremental; otherwise a finding is
    incremental when its line is one of its file's changed lines.
    """
    if not changed_lines_by_file:
        return [dataclasses.replace(f, incremental=True) for f in findings]
    changed = _changed_lines_index(changed_lines_by_file)
    return [
        dataclasses.replace(f, incremental=f.line in changed.get(os.path.normpath(f.file), ()))
        for f in findings
    ]
