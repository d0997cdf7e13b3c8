"""Review unit and batch models."""

from dataclasses import dataclass, field
from enum import Enum

# Fixed per-file overhead used when estimating request size
REQUEST_OVERHEAD_CHARS = 32


class OriginKind(Enum):
    """Where a review unit came from."""

    WHOLE_FILE = "whole_file"
    AST_SNIPPET = "ast_snippet"


@dataclass(frozen=True)
class AstSnippet:
    """A changed AST scope returned by the snippet provider."""

    start_line: int
    end_line: int
    source: str


@dataclass(frozen=True)
class ReviewUnit:
    """One piece of source slated for analysis."""

    file_path: str
    content: str
    origin_kind: OriginKind = OriginKind.WHOLE_FILE
    line_range: tuple[int, int] | None = None

    @classmethod
    def from_snippet(cls, file_path: str, snippet: AstSnippet) -> "ReviewUnit":
        """Build an AST-snippet unit."""
        return cls(
            file_path=file_path,
            content=snippet.source,
            origin_kind=OriginKind.AST_SNIPPET,
            line_range=(snippet.start_line, snippet.end_line),
        )

    @property
    def start_line(self) -> int:
        """First line covered by the unit (1 for whole files)."""
        return self.line_range[0] if self.line_range else 1


@dataclass(frozen=True)
class BatchFile:
    """A (path, content) pair as sent to the service."""

    path: str
    content: str
    snippet_count: int = 1


def estimate_request_chars(files: list[BatchFile]) -> int:
    """Estimate the serialized request size for a list of files."""
    return sum(len(f.path) + len(f.content) + REQUEST_OVERHEAD_CHARS for f in files)


@dataclass
class Batch:
    """One outbound request's worth of files."""

    batch_id: str
    files: list[BatchFile] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate batch data."""
        if not self.files:
            raise ValueError(f"Batch {self.batch_id} must contain at least one file")

    @property
    def request_chars(self) -> int:
        """Estimated request size in characters."""
        return estimate_request_chars(self.files)

    @property
    def paths(self) -> list[str]:
        """Distinct file paths in batch order."""
        return list(dict.fromkeys(f.path for f in self.files))

    @property
    def snippet_count(self) -> int:
        """Total snippet weight carried by the batch."""
        return sum(max(1, f.snippet_count) for f in self.files)

    def split_in_half(self) -> tuple["Batch", "Batch"]:
        """Bisect by file count; the left half gets the extra file."""
        if len(self.files) < 2:
            raise ValueError(f"Batch {self.batch_id} has a single file and cannot be split")
        mid = (len(self.files) + 1) // 2
        return (
            Batch(batch_id=f"{self.batch_id}.1", files=self.files[:mid]),
            Batch(batch_id=f"{self.batch_id}.2", files=self.files[mid:]),
        )
