"""Command-line interface for Agent Review."""

import asyncio
import fnmatch
import json
import logging
import sys
from collections.abc import Sequence
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from agent_review import __version__
from agent_review.api.client import ClientConfig, ReviewApiClient
from agent_review.config import Config, load_config, validate_config
from agent_review.errors import AgentReviewError
from agent_review.models.context import RunContext
from agent_review.models.findings import ReviewResult, Severity
from agent_review.orchestrator.coordinator import (
    MultiRootCoordinator,
    MultiRootResult,
    filter_repository_roots,
    has_repository_marker,
)
from agent_review.orchestrator.suppression import STORE_DIR, SuppressionStore
from agent_review.parsing.formats import get_format
from agent_review.review import review_root

console = Console()
logger = logging.getLogger(__name__)

SKIPPED_DIRS = {".git", STORE_DIR, "__pycache__", "node_modules", ".venv"}

SEVERITY_STYLES = {
    Severity.ERROR: "red",
    Severity.WARNING: "yellow",
    Severity.INFO: "cyan",
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def discover_files(root: str, include: Sequence[str], exclude: Sequence[str] = ()) -> list[str]:
    """Files under `root` matching an include glob, as sorted relative paths."""
    base = Path(root)
    found: set[str] = set()
    for pattern in include:
        for path in base.glob(pattern):
            if not path.is_file():
                continue
            relative = path.relative_to(base)
            if SKIPPED_DIRS.intersection(relative.parts):
                continue
            relative_str = relative.as_posix()
            if any(fnmatch.fnmatch(relative_str, excluded) for excluded in exclude):
                continue
            found.add(relative_str)
    return sorted(found)


def result_to_dict(merged: MultiRootResult) -> dict[str, Any]:
    """JSON-friendly view of a merged result."""

    def finding_dict(finding: Any) -> dict[str, Any]:
        data = asdict(finding)
        data["severity"] = finding.severity.value
        return data

    result = merged.result
    return {
        "passed": merged.passed,
        "errors": [finding_dict(f) for f in result.errors],
        "warnings": [finding_dict(f) for f in result.warnings],
        "info": [finding_dict(f) for f in result.info],
        "failures": [asdict(f) for f in result.failures],
        "failures_by_class": result.failures_by_class,
        "suppressed_count": result.suppressed_count,
        "failed_roots": merged.failed_roots,
    }


def print_result_table(result: ReviewResult) -> None:
    """Render findings as a rich table."""
    if not result.findings:
        console.print("[green]✓ No issues found[/green]")
        return

    table = Table(title="Review Findings")
    table.add_column("Severity")
    table.add_column("Location")
    table.add_column("Message")
    table.add_column("Fingerprint", style="dim")

    for finding in result.findings:
        style = SEVERITY_STYLES[finding.severity]
        table.add_row(
            f"[{style}]{finding.severity.value}[/{style}]",
            f"{finding.file}:{finding.line}:{finding.column}",
            finding.message,
            finding.fingerprint or "",
        )
    console.print(table)


async def review_roots_async(
    roots: Sequence[str],
    include: Sequence[str],
    config: Config,
) -> MultiRootResult:
    """Review every root with one shared service client."""
    response_format = get_format(config.api)
    client_config = ClientConfig(
        endpoint=config.api.endpoint,
        api_key=config.api.api_key,
        timeout=config.api.timeout_seconds,
    )

    async with ReviewApiClient(client_config) as client:

        async def review_one(root: str) -> ReviewResult:
            ctx = RunContext.from_config(root, config)
            paths = discover_files(root, include, config.policy.exclude)
            root_review = await review_root(
                ctx,
                paths,
                client,
                response_format,
                api=config.api,
                dedup=config.dedup,
            )
            stats = root_review.stats
            logger.debug(
                f"{root}: {stats.llm_calls} calls, {stats.prompt_tokens}+"
                f"{stats.completion_tokens} tokens, {stats.llm_total_ms}ms"
            )
            return root_review.result

        coordinator = MultiRootCoordinator(review_one, config.roots.max_concurrency)
        return await coordinator.review(roots)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def cli(verbose: bool) -> None:
    """Agent Review - batched AI code review."""
    setup_logging(verbose)


@cli.command("review")
@click.argument("roots", nargs=-1, type=click.Path(exists=True, file_okay=False))
@click.option("--include", "include", multiple=True, help="Glob of files to review (repeatable)")
@click.option("--output", type=click.Choice(["table", "json"]), default="table")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file path")
def review(
    roots: tuple[str, ...],
    include: tuple[str, ...],
    output: str,
    config_path: str | None,
) -> None:
    """Review the files under one or more repository roots."""
    config = load_config(Path(config_path) if config_path else None)
    errors = validate_config(config)
    if errors:
        for error in errors:
            console.print(f"[red]Config error:[/red] {error}")
        sys.exit(1)

    marker = config.roots.repository_marker
    repo_roots = filter_repository_roots(
        list(roots) or ["."],
        lambda root: has_repository_marker(root, marker),
    )
    if not repo_roots:
        console.print(f"[yellow]No repository roots found (looking for {marker})[/yellow]")
        return

    try:
        merged = asyncio.run(
            review_roots_async(repo_roots, list(include) or config.policy.include, config)
        )
    except AgentReviewError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if output == "json":
        print(json.dumps(result_to_dict(merged), indent=2))
    else:
        print_result_table(merged.result)
        result = merged.result
        console.print(
            f"{len(result.errors)} errors, {len(result.warnings)} warnings, "
            f"{len(result.info)} info, {result.suppressed_count} suppressed"
        )
        if result.partial:
            counts = ", ".join(f"{k}={v}" for k, v in sorted(result.failures_by_class.items()))
            console.print(f"[yellow]⚠️  {len(result.failures)} batches failed ({counts})[/yellow]")
        for root, reason in merged.failed_roots.items():
            console.print(f"[red]❌ {root} failed:[/red] {reason}")

    if not merged.passed:
        sys.exit(1)


@cli.command("ignore")
@click.argument("fingerprint")
@click.option(
    "--root",
    default=".",
    type=click.Path(exists=True, file_okay=False),
    help="Workspace root the fingerprint belongs to",
)
def ignore(fingerprint: str, root: str) -> None:
    """Suppress a finding by fingerprint in one root."""
    store = SuppressionStore(root)
    if store.add(fingerprint):
        console.print(f"[green]✓ Ignoring {fingerprint}[/green] ({store.count()} suppressed)")
    else:
        console.print(f"[dim]{fingerprint} is already ignored[/dim]")


@cli.group("config")
def config_group() -> None:
    """Configuration commands."""
    pass


@config_group.command("validate")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file path")
def config_validate(config_path: str | None) -> None:
    """Validate configuration file."""
    try:
        config = load_config(Path(config_path) if config_path else None)
        errors = validate_config(config)

        if errors:
            console.print("[red]Configuration is invalid:[/red]")
            for error in errors:
                console.print(f"  • {error}")
            sys.exit(1)
        else:
            console.print("[green]✓ Configuration is valid[/green]")
    except AgentReviewError as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        sys.exit(1)


@config_group.command("show")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file path")
def config_show(config_path: str | None) -> None:
    """Show current configuration."""
    config = load_config(Path(config_path) if config_path else None)

    console.print("\n[bold]Current Configuration[/bold]\n")

    for section, values in config.to_dict().items():
        table = Table(title=section)
        table.add_column("Setting")
        table.add_column("Value")
        for key, value in values.items():
            table.add_row(key, str(value))
        console.print(table)


if __name__ == "__main__":
    cli()
