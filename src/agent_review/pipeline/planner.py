"""Unit and batch planning.

Groups review units into ordered batches that respect a size budget.
Planning is pure and deterministic: the same units always produce the same
batch sequence and chunk boundaries.
"""

import logging
import math
from collections.abc import Callable, Sequence
from typing import TypeVar

from agent_review.errors import PlanningError
from agent_review.models.context import BatchingMode, ChunkStrategy, WeightBy
from agent_review.models.units import Batch, BatchFile, OriginKind, ReviewUnit

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 5
DEFAULT_SNIPPET_BUDGET = 25


def plan(
    units: Sequence[ReviewUnit],
    mode: BatchingMode = BatchingMode.COUNT,
    budget: int | None = None,
    strategy: ChunkStrategy = ChunkStrategy.EVEN,
    weight_by: WeightBy = WeightBy.COUNT,
) -> list[Batch]:
    """Group review units into ordered batches.

    Args:
        units: Units to plan, in caller order
        mode: Count-based (files per batch) or snippet-based (weighted pools)
        budget: Files per batch (count mode) or max chunk weight (snippet mode)
        strategy: How snippet pools are cut into chunks
        weight_by: Snippet weight function (count or characters)

    Returns:
        Ordered list of non-empty batches

    Raises:
        PlanningError: If the budget is not a positive integer
    """
    if budget is None:
        budget = DEFAULT_SNIPPET_BUDGET if mode == BatchingMode.SNIPPET else DEFAULT_BATCH_SIZE
    if budget < 1:
        raise PlanningError(f"Batch budget must be >= 1, got {budget}")

    usable = [unit for unit in units if _has_content(unit)]
    if not usable:
        return []

    if mode == BatchingMode.COUNT:
        groups = split_into_batches(_files_by_path(usable), budget)
    else:
        groups = _plan_snippet_groups(usable, budget, strategy, weight_by)

    batches = [
        Batch(batch_id=f"batch-{i}", files=group) for i, group in enumerate(groups, 1)
    ]
    logger.debug(
        f"Planned {len(batches)} batches from {len(usable)} units "
        f"(mode={mode.value}, budget={budget}, strategy={strategy.value})"
    )
    return batches


def split_into_batches(items: Sequence[T], batch_size: int) -> list[list[T]]:
    """Split items into fixed-size groups; the last group may be short."""
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


def unit_weight(unit: ReviewUnit, weight_by: WeightBy) -> int:
    """Weight of a single unit under the given weight function."""
    if weight_by == WeightBy.CHARS:
        return max(1, len(unit.content))
    return 1


def chunk_pool(
    pool: Sequence[T],
    budget: int,
    strategy: ChunkStrategy,
    weight: Callable[[T], int],
) -> list[list[T]]:
    """Cut a weighted pool into ordered chunks that fit the budget.

    An item heavier than the budget always lands in a chunk of its own.
    """
    if not pool:
        return []
    if strategy == ChunkStrategy.CONTIGUOUS:
        return pack_greedy(pool, budget, weight)

    chunks: list[list[T]] = []
    segment: list[T] = []
    for item in pool:
        if weight(item) > budget:
            chunks.extend(_even_chunks(segment, budget, weight))
            chunks.append([item])
            segment = []
        else:
            segment.append(item)
    chunks.extend(_even_chunks(segment, budget, weight))
    return chunks


def pack_greedy(
    items: Sequence[T], budget: int, weight: Callable[[T], int]
) -> list[list[T]]:
    """Fill chunks in order, starting a new one when the budget would overflow."""
    chunks: list[list[T]] = []
    current: list[T] = []
    current_weight = 0
    for item in items:
        item_weight = weight(item)
        if current and current_weight + item_weight > budget:
            chunks.append(current)
            current = []
            current_weight = 0
        current.append(item)
        current_weight += item_weight
    if current:
        chunks.append(current)
    return chunks


def render_snippets(file_path: str, units: Sequence[ReviewUnit]) -> str:
    """Concatenate snippet units with `# line N` markers."""
    lines = [
        f"File: {file_path}",
        "Changed AST snippets follow; line numbers refer to the current file.",
        "",
    ]
    for unit in units:
        lines.append(f"# line {unit.start_line}")
        lines.append(unit.content)
        lines.append("")
    return "\n".join(lines)


def _has_content(unit: ReviewUnit) -> bool:
    if unit.content:
        return True
    logger.warning(f"Skipping review unit with empty content: {unit.file_path}")
    return False


def _files_by_path(units: Sequence[ReviewUnit]) -> list[BatchFile]:
    """Collapse units into one entry per file, in first-seen order."""
    whole: dict[str, ReviewUnit] = {}
    snippets: dict[str, list[ReviewUnit]] = {}
    order: list[str] = []
    for unit in units:
        if unit.file_path not in whole and unit.file_path not in snippets:
            order.append(unit.file_path)
        if unit.origin_kind == OriginKind.WHOLE_FILE:
            whole.setdefault(unit.file_path, unit)
        else:
            snippets.setdefault(unit.file_path, []).append(unit)

    files = []
    for path in order:
        if path in whole:
            files.append(BatchFile(path=path, content=whole[path].content))
        else:
            file_snippets = snippets[path]
            files.append(
                BatchFile(
                    path=path,
                    content=render_snippets(path, file_snippets),
                    snippet_count=len(file_snippets),
                )
            )
    return files


def _plan_snippet_groups(
    units: Sequence[ReviewUnit],
    budget: int,
    strategy: ChunkStrategy,
    weight_by: WeightBy,
) -> list[list[BatchFile]]:
    """Snippet pools per file first, then whole files packed by weight."""
    pools: dict[str, list[ReviewUnit]] = {}
    whole_files: list[ReviewUnit] = []
    for unit in units:
        if unit.origin_kind == OriginKind.AST_SNIPPET:
            pools.setdefault(unit.file_path, []).append(unit)
        else:
            whole_files.append(unit)

    def weight(unit: ReviewUnit) -> int:
        return unit_weight(unit, weight_by)

    groups: list[list[BatchFile]] = []
    for path, pool in pools.items():
        for chunk in chunk_pool(pool, budget, strategy, weight):
            groups.append(
                [
                    BatchFile(
                        path=path,
                        content=render_snippets(path, chunk),
                        snippet_count=len(chunk),
                    )
                ]
            )

    for packed in pack_greedy(whole_files, budget, weight):
        groups.append([BatchFile(path=u.file_path, content=u.content) for u in packed])
    return groups


def _even_chunks(
    segment: Sequence[T], budget: int, weight: Callable[[T], int]
) -> list[list[T]]:
    """Minimum number of chunks within budget, as equal as possible."""
    if not segment:
        return []
    weights = [weight(item) for item in segment]
    if all(w == 1 for w in weights):
        # Unit weights: sizes differ by at most one, larger chunks first
        count = math.ceil(len(segment) / budget)
        base, remainder = divmod(len(segment), count)
        chunks = []
        cursor = 0
        for i in range(count):
            size = base + (1 if i < remainder else 0)
            chunks.append(list(segment[cursor : cursor + size]))
            cursor += size
        return chunks

    # Smallest capacity that still needs no more chunks than the budget does
    target = len(pack_greedy(segment, budget, weight))
    low, high = max(weights), budget
    while low < high:
        mid = (low + high) // 2
        if len(pack_greedy(segment, mid, weight)) <= target:
            high = mid
        else:
            low = mid + 1
    return pack_greedy(segment, low, weight)
