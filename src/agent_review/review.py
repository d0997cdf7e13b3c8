"""Single-root review flow.

load files -> build units -> plan -> execute -> resolve positions and severity
-> keep changed lines (diff_only) -> drop repeats of local diagnostics
-> deduplicate -> fingerprint -> mark incremental findings.
"""

import logging
import os
from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from agent_review.api.client import ReviewService
from agent_review.config import ApiSettings, DedupSettings
from agent_review.errors import NoBatchesError
from agent_review.models.context import RunContext, RunStats
from agent_review.models.findings import Diagnostic, ReviewResult
from agent_review.models.units import AstSnippet, ReviewUnit
from agent_review.orchestrator.deduplicator import (
    DedupConfig,
    IssueDeduplicator,
    filter_by_diagnostics,
)
from agent_review.parsing.formats import ResponseFormat
from agent_review.pipeline.executor import BatchExecutor, ExecutorSettings
from agent_review.pipeline.fingerprint import attach_fingerprints
from agent_review.pipeline.planner import plan
from agent_review.pipeline.resolver import (
    filter_to_changed_lines,
    mark_incremental,
    resolve_findings,
)

logger = logging.getLogger(__name__)

LoadFile = Callable[[str], str]
SnippetProvider = Callable[[str], list[AstSnippet] | None]
DiagnosticsProvider = Callable[[str], list[Diagnostic]]
ChangedLinesProvider = Callable[[str], Collection[int] | None]


def read_text_file(path: str) -> str:
    """Read a UTF-8 source file.

    Raises:
        OSError: If the file can't be read
    """
    return Path(path).read_text(encoding="utf-8", errors="replace")


@dataclass
class ReviewSources:
    """Inbound collaborators for one root."""

    load_file: LoadFile = read_text_file
    ast_snippets: SnippetProvider | None = None
    diagnostics: DiagnosticsProvider | None = None
    changed_lines: ChangedLinesProvider | None = None


@dataclass
class RootReview:
    """Result of reviewing one root, plus the loaded contents and run totals."""

    result: ReviewResult
    contents: dict[str, str] = field(default_factory=dict)
    stats: RunStats = field(default_factory=RunStats)


def load_contents(root: str, paths: Sequence[str], load_file: LoadFile) -> dict[str, str]:
    """Load each path relative to `root`; unreadable or empty files are skipped."""
    contents: dict[str, str] = {}
    for path in paths:
        full_path = path if os.path.isabs(path) else os.path.join(root, path)
        try:
            content = load_file(full_path)
        except OSError as e:
            logger.warning(f"Skipping {path}: {e}")
            continue
        if not content:
            logger.warning(f"Skipping empty file {path}")
            continue
        contents[path] = content
    return contents


def build_units(
    contents: dict[str, str],
    ast_snippets: SnippetProvider | None = None,
) -> list[ReviewUnit]:
    """One unit per file, or one per changed AST scope when snippets are available."""
    units: list[ReviewUnit] = []
    for path, content in contents.items():
        snippets = ast_snippets(path) if ast_snippets else None
        if snippets:
            units.extend(ReviewUnit.from_snippet(path, snippet) for snippet in snippets)
        else:
            units.append(ReviewUnit(file_path=path, content=content))
    return units


async def review_root(
    ctx: RunContext,
    paths: Sequence[str],
    service: ReviewService,
    response_format: ResponseFormat,
    api: ApiSettings | None = None,
    sources: ReviewSources | None = None,
    dedup: DedupSettings | None = None,
    stats: RunStats | None = None,
) -> RootReview:
    """Review a set of files under one root.

    Args:
        ctx: Read-only run settings for this root
        paths: Files to review, relative to `ctx.root`
        service: Transport to the review service
        response_format: Request/response format variant
        api: Retry and continuation settings
        sources: File loader plus optional snippet, diagnostics and changed-line providers
        dedup: Deduplication thresholds
        stats: Run-scoped accumulator (a fresh one when omitted)

    Returns:
        RootReview with the bucketed result and batch failures

    Raises:
        NoBatchesError: If files were requested but none could be loaded
    """
    api = api or ApiSettings()
    sources = sources or ReviewSources()
    dedup = dedup or DedupSettings()
    stats = stats if stats is not None else RunStats()

    if not paths:
        logger.info(f"No files to review under {ctx.root}")
        return RootReview(result=ReviewResult(passed=True), stats=stats)

    contents = load_contents(ctx.root, paths, sources.load_file)
    units = build_units(contents, sources.ast_snippets)
    batches = plan(
        units,
        mode=ctx.batching_mode,
        budget=ctx.budget,
        strategy=ctx.strategy,
        weight_by=ctx.weight_by,
    )
    if not batches:
        raise NoBatchesError(f"None of the {len(paths)} requested files under {ctx.root} could be loaded")

    diagnostics_by_file: dict[str, list[Diagnostic]] = {}
    if sources.diagnostics:
        for path in contents:
            found = sources.diagnostics(path)
            if found:
                diagnostics_by_file[path] = list(found)

    changed_lines_by_file: dict[str, Collection[int]] = {}
    if sources.changed_lines:
        for path in contents:
            lines = sources.changed_lines(path)
            if lines is not None:
                changed_lines_by_file[path] = lines

    logger.info(f"Reviewing {len(contents)} files under {ctx.root} in {len(batches)} batches")
    executor = BatchExecutor(
        service,
        response_format,
        settings=ExecutorSettings.from_context(ctx, api),
        stats=stats,
        diagnostics_by_file=diagnostics_by_file,
    )
    execution = await executor.execute(batches)

    findings = resolve_findings(
        execution.findings,
        contents,
        ctx.action,
        use_diff_line_numbers=ctx.reported_lines_are_exact,
    )
    if ctx.diff_only:
        findings = filter_to_changed_lines(findings, changed_lines_by_file)
    findings = filter_by_diagnostics(findings, diagnostics_by_file)
    findings = IssueDeduplicator(
        DedupConfig(
            same_line_threshold=dedup.same_line_threshold,
            proximity_threshold=dedup.proximity_threshold,
            line_window=dedup.line_window,
            same_severity_pick=dedup.same_severity_pick,
        )
    ).deduplicate(findings)
    findings = attach_fingerprints(findings, contents, ctx.root)
    findings = mark_incremental(findings, changed_lines_by_file)

    result = ReviewResult.from_findings(findings, execution.failures)
    logger.info(
        f"Review of {ctx.root} complete: {len(result.errors)} errors, "
        f"{len(result.warnings)} warnings, {len(result.info)} info, "
        f"{len(result.failures)} failed batches"
    )
    return RootReview(result=result, contents=contents, stats=stats)
