"""Data models for Agent Review."""

from agent_review.models.context import (
    BatchingMode,
    ChunkStrategy,
    RunContext,
    RunStats,
    WeightBy,
)
from agent_review.models.findings import (
    AI_RULE,
    BatchFailure,
    Diagnostic,
    Finding,
    PolicyAction,
    ReviewResult,
    Severity,
)
from agent_review.models.units import (
    AstSnippet,
    Batch,
    BatchFile,
    OriginKind,
    ReviewUnit,
    estimate_request_chars,
)

__all__ = [
    "AI_RULE",
    "AstSnippet",
    "Batch",
    "BatchFailure",
    "BatchFile",
    "BatchingMode",
    "ChunkStrategy",
    "Diagnostic",
    "Finding",
    "OriginKind",
    "PolicyAction",
    "ReviewResult",
    "ReviewUnit",
    "RunContext",
    "RunStats",
    "Severity",
    "WeightBy",
    "estimate_request_chars",
]
