"""Deduplication, suppression and multi-root coordination."""

from agent_review.orchestrator.coordinator import (
    MultiRootCoordinator,
    MultiRootResult,
    filter_repository_roots,
    merge_review_results,
    run_with_global_concurrency,
)
from agent_review.orchestrator.deduplicator import (
    DedupConfig,
    IssueDeduplicator,
    filter_by_diagnostics,
)
from agent_review.orchestrator.suppression import SuppressionStore

__all__ = [
    "DedupConfig",
    "IssueDeduplicator",
    "MultiRootCoordinator",
    "MultiRootResult",
    "SuppressionStore",
    "filter_by_diagnostics",
    "filter_repository_roots",
    "merge_review_results",
    "run_with_global_concurrency",
]
