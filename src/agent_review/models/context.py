"""Run-scoped context and accumulator models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from agent_review.models.findings import PolicyAction

if TYPE_CHECKING:
    from agent_review.config import Config


class BatchingMode(Enum):
    """How units are grouped into batches."""

    COUNT = "count"
    SNIPPET = "snippet"


class WeightBy(Enum):
    """Weight function for snippet pools."""

    COUNT = "count"
    CHARS = "chars"


class ChunkStrategy(Enum):
    """How a snippet pool is cut into chunks."""

    EVEN = "even"
    CONTIGUOUS = "contiguous"


@dataclass(frozen=True)
class RunContext:
    """Read-only state for one review invocation."""

    root: str
    concurrency: int = 2
    batching_mode: BatchingMode = BatchingMode.COUNT
    batch_size: int = 5
    snippet_budget: int = 25
    weight_by: WeightBy = WeightBy.COUNT
    strategy: ChunkStrategy = ChunkStrategy.EVEN
    max_request_chars: int = 50000
    max_split_depth: int = 3
    action: PolicyAction = PolicyAction.WARNING
    use_diff_line_numbers: bool | None = None
    diff_only: bool = False

    @classmethod
    def from_config(cls, root: str, config: "Config") -> "RunContext":
        """Build a context for one root from loaded configuration."""
        batching = config.batching
        return cls(
            root=root,
            concurrency=batching.concurrency,
            batching_mode=BatchingMode(batching.mode),
            batch_size=batching.batch_size,
            snippet_budget=batching.snippet_budget,
            weight_by=WeightBy(batching.weight_by),
            strategy=ChunkStrategy(batching.strategy),
            max_request_chars=batching.max_request_chars,
            max_split_depth=batching.max_split_depth,
            action=PolicyAction(config.policy.action),
            use_diff_line_numbers=config.policy.use_diff_line_numbers,
            diff_only=config.policy.diff_only,
        )

    @property
    def budget(self) -> int:
        """Size budget for the active batching mode."""
        if self.batching_mode == BatchingMode.SNIPPET:
            return self.snippet_budget
        return self.batch_size

    @property
    def reported_lines_are_exact(self) -> bool:
        """Whether reported line numbers should be used without snippet search.

        Snippet batches carry explicit line markers, so the service reports
        real line numbers unless the policy says otherwise.
        """
        if self.use_diff_line_numbers is not None:
            return self.use_diff_line_numbers
        return self.batching_mode == BatchingMode.SNIPPET


@dataclass
class RunStats:
    """Per-run totals handed explicitly to the executor."""

    llm_calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_total_ms: int = 0
    in_flight: int = 0
    max_in_flight: int = 0
    splits: int = 0
    continuations: int = 0
    failures_by_class: dict[str, int] = field(default_factory=dict)

    def call_started(self) -> None:
        """Record a send entering flight."""
        self.llm_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)

    def call_finished(self, duration_ms: int) -> None:
        """Record a send leaving flight."""
        self.in_flight -= 1
        self.llm_total_ms += duration_ms

    def add_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        """Accumulate token usage reported by the service."""
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens

    def record_failure(self, error_class: str) -> None:
        """Count a dropped batch by its error class."""
        self.failures_by_class[error_class] = self.failures_by_class.get(error_class, 0) + 1
