"""Finding models for code review results."""

from dataclasses import dataclass, field
from enum import Enum

AI_RULE = "ai_review"


class Severity(Enum):
    """Severity levels for findings.

    - ERROR: Blocks the commit when policy allows it.
    - WARNING: Should fix, never blocks.
    - INFO: Logged only.
    """

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        """Ordering weight, higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 1, Severity.WARNING: 2, Severity.ERROR: 3}


class PolicyAction(Enum):
    """Configured action for AI findings."""

    BLOCK_COMMIT = "block_commit"
    WARNING = "warning"
    LOG = "log"


@dataclass
class Finding:
    """A single reported issue."""

    file: str
    line: int
    column: int
    message: str
    rule: str = AI_RULE
    severity: Severity = Severity.WARNING
    snippet: str | None = None
    fingerprint: str | None = None
    incremental: bool | None = None
    workspace_root: str | None = None

    def __post_init__(self) -> None:
        """Validate finding data."""
        if self.line < 0:
            raise ValueError(f"line must be >= 0, got {self.line}")
        if self.column < 0:
            raise ValueError(f"column must be >= 0, got {self.column}")

    @property
    def identity(self) -> tuple[str, int, str]:
        """Exact identity used when merging continuation output."""
        return (self.file, self.line, self.message)

    @property
    def is_ai(self) -> bool:
        """Whether the finding came from the AI service."""
        return self.rule == AI_RULE or self.rule.startswith("ai_")


@dataclass(frozen=True)
class Diagnostic:
    """A local linter/compiler diagnostic for one file."""

    line: int
    message: str


@dataclass
class BatchFailure:
    """Diagnostic record for a batch that contributed no findings."""

    batch_id: str
    error_class: str
    message: str


@dataclass
class ReviewResult:
    """Findings split by severity plus failure metadata."""

    passed: bool
    errors: list[Finding] = field(default_factory=list)
    warnings: list[Finding] = field(default_factory=list)
    info: list[Finding] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)
    suppressed_count: int = 0

    @classmethod
    def from_findings(
        cls,
        findings: list[Finding],
        failures: list[BatchFailure] | None = None,
    ) -> "ReviewResult":
        """Bucket findings by severity; the result passes without errors."""
        errors = [f for f in findings if f.severity == Severity.ERROR]
        warnings = [f for f in findings if f.severity == Severity.WARNING]
        info = [f for f in findings if f.severity == Severity.INFO]
        return cls(
            passed=not errors,
            errors=errors,
            warnings=warnings,
            info=info,
            failures=list(failures or []),
        )

    @property
    def findings(self) -> list[Finding]:
        """All findings, most severe first."""
        return [*self.errors, *self.warnings, *self.info]

    @property
    def failures_by_class(self) -> dict[str, int]:
        """Count failed batches by error class."""
        counts: dict[str, int] = {}
        for failure in self.failures:
            counts[failure.error_class] = counts.get(failure.error_class, 0) + 1
        return counts

    @property
    def partial(self) -> bool:
        """True when some batches failed and results are incomplete."""
        return bool(self.failures)
