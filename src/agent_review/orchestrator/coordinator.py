"""Multi-root coordination.

Runs the single-root pipeline for several workspace roots under one global
concurrency limit and merges the results. Suppression state is looked up per
root, so ignoring a finding in one root never hides it in another.
"""

import asyncio
import dataclasses
import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from agent_review.errors import AllRootsFailedError
from agent_review.models.findings import Finding, ReviewResult
from agent_review.orchestrator.suppression import SuppressionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def has_repository_marker(root: str, marker: str = ".git") -> bool:
    """Whether `root` contains a VCS marker entry."""
    return os.path.exists(os.path.join(root, marker))


def filter_repository_roots(
    roots: Sequence[str],
    is_repository: Callable[[str], bool] = has_repository_marker,
) -> list[str]:
    """Keep the roots that are repositories, in input order."""
    kept = [root for root in roots if is_repository(root)]
    skipped = len(roots) - len(kept)
    if skipped:
        logger.info(f"Skipping {skipped} roots that are not repositories")
    return kept


async def run_with_global_concurrency(
    items: Sequence[T],
    max_concurrency: int,
    worker: Callable[[T, int], Awaitable[R]],
) -> list[R]:
    """Run `worker` over items with at most `max_concurrency` in flight.

    Args:
        items: Inputs to process
        max_concurrency: Upper bound on concurrently running workers
        worker: Coroutine function called with (item, index)

    Returns:
        Results in input order
    """
    if not items:
        return []
    concurrency = max(1, min(max_concurrency, len(items)))
    results: list[R | None] = [None] * len(items)
    next_index = 0

    async def run() -> None:
        nonlocal next_index
        while next_index < len(items):
            index = next_index
            next_index += 1
            results[index] = await worker(items[index], index)

    await asyncio.gather(*(run() for _ in range(concurrency)))
    return results  # type: ignore[return-value]


@dataclass
class MultiRootResult:
    """Merged result across roots."""

    result: ReviewResult
    per_root: dict[str, ReviewResult] = field(default_factory=dict)
    failed_roots: dict[str, str] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        """True only if every root passed and none failed."""
        return self.result.passed and not self.failed_roots


def merge_review_results(results: Sequence[ReviewResult]) -> ReviewResult:
    """Concatenate per-root results; passed only if every root passed."""
    if not results:
        return ReviewResult(passed=True)
    return ReviewResult(
        passed=all(r.passed for r in results),
        errors=[f for r in results for f in r.errors],
        warnings=[f for r in results for f in r.warnings],
        info=[f for r in results for f in r.info],
        failures=[f for r in results for f in r.failures],
        suppressed_count=sum(r.suppressed_count for r in results),
    )


def finalize_root_result(
    root: str,
    result: ReviewResult,
    store: SuppressionStore,
) -> ReviewResult:
    """Attribute findings to `root` and drop the ones its store suppresses."""
    attributed: list[Finding] = [
        dataclasses.replace(finding, workspace_root=root) for finding in result.findings
    ]
    kept, suppressed = store.filter(attributed)
    if suppressed:
        logger.info(f"Suppressed {suppressed} findings in {root}")
    finalized = ReviewResult.from_findings(kept, result.failures)
    finalized.suppressed_count = result.suppressed_count + suppressed
    return finalized


class MultiRootCoordinator:
    """Fans a per-root review out over many roots with one concurrency budget."""

    def __init__(
        self,
        review_root: Callable[[str], Awaitable[ReviewResult]],
        max_concurrency: int = 2,
        store_factory: Callable[[str], SuppressionStore] = SuppressionStore,
    ) -> None:
        """Initialize the coordinator.

        Args:
            review_root: Coroutine function reviewing one root
            max_concurrency: Roots reviewed at the same time
            store_factory: Builds the suppression store for a root
        """
        self.review_root = review_root
        self.max_concurrency = max_concurrency
        self.store_factory = store_factory
        self._stores: dict[str, SuppressionStore] = {}

    def store_for(self, root: str) -> SuppressionStore:
        """Suppression store scoped to one root."""
        if root not in self._stores:
            self._stores[root] = self.store_factory(root)
        return self._stores[root]

    async def review(self, roots: Sequence[str]) -> MultiRootResult:
        """Review every root and merge the results.

        Args:
            roots: Workspace roots, already filtered to repositories

        Returns:
            MultiRootResult; roots are merged in completion order

        Raises:
            AllRootsFailedError: If no root produced a result
        """
        if not roots:
            return MultiRootResult(result=ReviewResult(passed=True))

        completed: list[tuple[str, ReviewResult]] = []
        failed: dict[str, str] = {}

        async def worker(root: str, index: int) -> None:
            try:
                result = await self.review_root(root)
            except Exception as e:
                logger.error(f"Review of root {root} failed: {e}")
                failed[root] = f"{type(e).__name__}: {e}"
                return
            completed.append((root, finalize_root_result(root, result, self.store_for(root))))

        logger.info(f"Reviewing {len(roots)} roots, {self.max_concurrency} at a time")
        await run_with_global_concurrency(roots, self.max_concurrency, worker)

        if not completed:
            raise AllRootsFailedError(
                f"All {len(roots)} roots failed: "
                + "; ".join(f"{root} ({reason})" for root, reason in failed.items())
            )

        merged = merge_review_results([result for _, result in completed])
        if failed:
            merged.passed = False
        return MultiRootResult(
            result=merged,
            per_root=dict(completed),
            failed_roots=failed,
        )
