"""Issue deduplication.

Merges findings that describe the same problem:

1. Exact pass: same normalized path, line, column and normalized message.
2. Same-line pass: AI findings on one line with similar messages.
3. Proximity pass: AI findings a few lines apart with similar messages.

Only AI findings take part in the similarity passes. The surviving findings
keep their original relative order, and deduplicating twice changes nothing.
"""

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from difflib import SequenceMatcher

from agent_review.models.findings import Diagnostic, Finding

logger = logging.getLogger(__name__)

ANCHOR_KEYWORDS = (
    "v-for",
    ":key",
    "key",
    "null",
    "none",
    "undefined",
    "innerhtml",
    "eval",
    "async",
    "await",
    "try",
    "catch",
    "except",
)
ANCHOR_BOOST = 0.06
CROSS_LINE_MIN_SIMILARITY = 0.75
DIAGNOSTIC_SIMILARITY_THRESHOLD = 0.65

_QUOTED = re.compile(r"'[^']+'|\"[^\"]+\"|`[^`]+`")
_DIGITS = re.compile(r"\d+")
_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^\w\s]")


@dataclass
class DedupConfig:
    """Thresholds for the similarity passes."""

    same_line_threshold: float = 0.5
    proximity_threshold: float = 0.42
    line_window: int = 2
    same_severity_pick: str = "latest"


class _UnionFind:
    """Disjoint sets over 0..size-1 with path compression."""

    def __init__(self, size: int) -> None:
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, x: int) -> int:
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        if self.rank[root_a] < self.rank[root_b]:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        if self.rank[root_a] == self.rank[root_b]:
            self.rank[root_a] += 1


def normalize_path(path: str) -> str:
    """Use forward slashes so Windows and POSIX paths compare equal."""
    return path.replace("\\", "/")


def normalize_message(message: str) -> str:
    """Replace quoted identifiers and numbers for exact-key comparison."""
    text = _QUOTED.sub("<var>", message)
    text = _DIGITS.sub("<num>", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_for_similarity(message: str) -> str:
    """Lowercase and strip punctuation."""
    text = _NON_WORD.sub(" ", message.lower())
    return _WHITESPACE.sub(" ", text).strip()


def message_similarity(left: str, right: str) -> float:
    """Similarity in [0, 1]: equal or contained messages score 1.0."""
    a = normalize_for_similarity(left)
    b = normalize_for_similarity(right)
    if not a or not b:
        return 0.0
    if a == b or a in b or b in a:
        return 1.0

    left_tokens = set(a.split())
    right_tokens = set(b.split())
    token_similarity = len(left_tokens & right_tokens) / max(len(left_tokens), len(right_tokens))
    return max(token_similarity, SequenceMatcher(None, a, b).ratio())


def shared_anchor_count(left: str, right: str) -> int:
    """How many anchor keywords appear in both messages."""
    a, b = left.lower(), right.lower()
    return sum(1 for keyword in ANCHOR_KEYWORDS if keyword in a and keyword in b)


class IssueDeduplicator:
    """Collapses duplicate and near-duplicate findings."""

    def __init__(self, config: DedupConfig | None = None) -> None:
        """Initialize the deduplicator.

        Args:
            config: Optional similarity thresholds
        """
        self.config = config or DedupConfig()

    def deduplicate(self, findings: Sequence[Finding]) -> list[Finding]:
        """Run all passes in order.

        Args:
            findings: Findings in pipeline order

        Returns:
            A subsequence of `findings`; nothing is modified
        """
        result = self.dedupe_exact(findings)
        result = self.dedupe_by_similarity(
            result,
            line_window=0,
            threshold=self.config.same_line_threshold,
            same_severity_pick="first",
        )
        result = self.dedupe_by_similarity(
            result,
            line_window=self.config.line_window,
            threshold=self.config.proximity_threshold,
            same_severity_pick=self.config.same_severity_pick,
        )
        if len(result) < len(findings):
            logger.debug(f"Deduplicated {len(findings)} findings to {len(result)}")
        return result

    def dedupe_exact(self, findings: Sequence[Finding]) -> list[Finding]:
        """Merge findings with the same exact key, keeping the higher severity."""
        slots: dict[tuple[str, int, int, str], int] = {}
        result: list[Finding] = []
        for finding in findings:
            key = (
                normalize_path(finding.file),
                finding.line,
                finding.column,
                normalize_message(finding.message),
            )
            if key not in slots:
                slots[key] = len(result)
                result.append(finding)
            elif finding.severity.rank > result[slots[key]].severity.rank:
                result[slots[key]] = finding
        return result

    def dedupe_by_similarity(
        self,
        findings: Sequence[Finding],
        line_window: int,
        threshold: float,
        same_severity_pick: str = "latest",
    ) -> list[Finding]:
        """Cluster similar AI findings in the same file within a line window.

        Args:
            findings: Findings to scan
            line_window: Max line distance between merged findings (0 = same line)
            threshold: Minimum boosted similarity to merge
            same_severity_pick: "latest" or "first" wins among equal severities

        Returns:
            Findings with each cluster reduced to its winner
        """
        by_file: dict[str, list[int]] = {}
        for index, finding in enumerate(findings):
            if finding.is_ai:
                by_file.setdefault(normalize_path(finding.file), []).append(index)

        keep: set[int] = set()
        for indices in by_file.values():
            keep.update(
                self._cluster_winners(findings, indices, line_window, threshold, same_severity_pick)
            )
        return [f for i, f in enumerate(findings) if not f.is_ai or i in keep]

    def _cluster_winners(
        self,
        findings: Sequence[Finding],
        indices: list[int],
        line_window: int,
        threshold: float,
        same_severity_pick: str,
    ) -> list[int]:
        """Indices of the winning finding of each similarity cluster."""
        if len(indices) == 1:
            return indices
        ordered = sorted(indices, key=lambda i: (findings[i].line, i))
        uf = _UnionFind(len(ordered))

        for i in range(len(ordered)):
            left = findings[ordered[i]]
            for j in range(i + 1, len(ordered)):
                right = findings[ordered[j]]
                line_delta = right.line - left.line
                if line_delta > line_window:
                    break
                if self._should_merge(left, right, line_delta, threshold):
                    uf.union(i, j)

        winners: dict[int, int] = {}
        for i, original in enumerate(ordered):
            root = uf.find(i)
            if root not in winners:
                winners[root] = original
            else:
                winners[root] = self._pick(findings, winners[root], original, same_severity_pick)
        return list(winners.values())

    def _should_merge(self, left: Finding, right: Finding, line_delta: int, threshold: float) -> bool:
        similarity = message_similarity(left.message, right.message)
        anchors = shared_anchor_count(left.message, right.message)
        boosted = min(1.0, similarity + ANCHOR_BOOST * anchors)
        if boosted < threshold:
            return False
        return line_delta == 0 or similarity >= CROSS_LINE_MIN_SIMILARITY or anchors > 0

    @staticmethod
    def _pick(findings: Sequence[Finding], a: int, b: int, same_severity_pick: str) -> int:
        """Higher severity wins; ties go to the latest or first index."""
        rank_a, rank_b = findings[a].severity.rank, findings[b].severity.rank
        if rank_a != rank_b:
            return a if rank_a > rank_b else b
        if same_severity_pick == "latest":
            return max(a, b)
        return min(a, b)


def filter_by_diagnostics(
    findings: Sequence[Finding],
    diagnostics_by_file: Mapping[str, Sequence[Diagnostic]],
    threshold: float = DIAGNOSTIC_SIMILARITY_THRESHOLD,
) -> list[Finding]:
    """Drop AI findings that repeat a local diagnostic on the same line.

    If every finding would be dropped, the input is returned unchanged.
    """
    if not diagnostics_by_file or not findings:
        return list(findings)

    normalized = {normalize_path(path): items for path, items in diagnostics_by_file.items()}

    def is_duplicate(finding: Finding) -> bool:
        if not finding.is_ai:
            return False
        for diagnostic in normalized.get(normalize_path(finding.file), ()):
            if diagnostic.line == finding.line and (
                message_similarity(finding.message, diagnostic.message) >= threshold
            ):
                return True
        return False

    kept = [f for f in findings if not is_duplicate(f)]
    if not kept:
        logger.debug("Diagnostics filter would drop every finding; keeping all")
        return list(findings)
    if len(kept) < len(findings):
        logger.info(f"Dropped {len(findings) - len(kept)} findings already reported by diagnostics")
    return kept
