"""Planning, execution, resolution and fingerprinting."""

from agent_review.pipeline.executor import (
    BatchExecutor,
    BatchJob,
    BatchState,
    ExecutionResult,
    ExecutorSettings,
)
from agent_review.pipeline.fingerprint import attach_fingerprints, compute_fingerprint
from agent_review.pipeline.planner import plan
from agent_review.pipeline.resolver import map_severity, resolve_findings, resolve_position

__all__ = [
    "BatchExecutor",
    "BatchJob",
    "BatchState",
    "ExecutionResult",
    "ExecutorSettings",
    "attach_fingerprints",
    "compute_fingerprint",
    "map_severity",
    "plan",
    "resolve_findings",
    "resolve_position",
]
