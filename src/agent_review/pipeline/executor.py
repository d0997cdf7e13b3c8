"""Concurrent batch execution with bisection, retries and continuations.

Each batch moves through an explicit state machine:

    PENDING -> SENT | BISECTED
    SENT -> DONE | TRUNCATED | RETRYING | BISECTED | FAILED
    TRUNCATED -> SENT | DONE | FAILED
    RETRYING -> SENT | FAILED

Batches that are bisected hand their two halves back to the shared queue;
the parent is never sent again.
"""

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from agent_review.api.client import ReviewService
from agent_review.api.errors import ErrorClass, ReviewApiError, classify_error
from agent_review.errors import InvalidTransitionError
from agent_review.models.context import BatchingMode, RunContext, RunStats
from agent_review.models.findings import BatchFailure, Diagnostic, Finding
from agent_review.models.units import Batch
from agent_review.parsing.formats import ResponseFormat
from agent_review.parsing.response_parser import ParseResult, ResponseParseError, merge_continuation

if TYPE_CHECKING:
    from agent_review.config import ApiSettings

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = 8


class BatchState(Enum):
    """Lifecycle states of a batch job."""

    PENDING = "pending"
    SENT = "sent"
    TRUNCATED = "truncated"
    RETRYING = "retrying"
    BISECTED = "bisected"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[BatchState, set[BatchState]] = {
    BatchState.PENDING: {BatchState.SENT, BatchState.BISECTED},
    BatchState.SENT: {
        BatchState.DONE,
        BatchState.TRUNCATED,
        BatchState.RETRYING,
        BatchState.BISECTED,
        BatchState.FAILED,
    },
    BatchState.TRUNCATED: {BatchState.SENT, BatchState.DONE, BatchState.FAILED},
    BatchState.RETRYING: {BatchState.SENT, BatchState.FAILED},
    BatchState.BISECTED: set(),
    BatchState.DONE: set(),
    BatchState.FAILED: set(),
}


@dataclass
class BatchJob:
    """A batch plus its execution bookkeeping."""

    batch: Batch
    order: tuple[int, ...]
    split_depth: int = 0
    state: BatchState = BatchState.PENDING
    attempts: int = 0
    continuations: int = 0
    findings: list[Finding] = field(default_factory=list)
    failure: BatchFailure | None = None
    history: list[BatchState] = field(default_factory=lambda: [BatchState.PENDING])

    @property
    def batch_id(self) -> str:
        """Identifier of the underlying batch."""
        return self.batch.batch_id

    def transition(self, new_state: BatchState) -> None:
        """Move to `new_state`.

        Raises:
            InvalidTransitionError: If the move isn't allowed from the current state
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Batch {self.batch_id}: cannot go from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    def children(self, split_depth: int) -> list["BatchJob"]:
        """Halve the batch into two pending jobs."""
        left, right = self.batch.split_in_half()
        return [
            BatchJob(batch=left, order=(*self.order, 1), split_depth=split_depth),
            BatchJob(batch=right, order=(*self.order, 2), split_depth=split_depth),
        ]


@dataclass
class ExecutorSettings:
    """Limits applied while executing batches."""

    concurrency: int = 2
    max_request_chars: int = 50000
    max_split_depth: int = 3
    retry_count: int = 3
    retry_delay_seconds: float = 1.0
    max_continuations: int = 3
    snippet_mode: bool = False

    def __post_init__(self) -> None:
        """Clamp concurrency to the supported range."""
        self.concurrency = max(1, min(MAX_CONCURRENCY, self.concurrency))

    @classmethod
    def from_context(cls, ctx: RunContext, api: "ApiSettings") -> "ExecutorSettings":
        """Combine run context limits with service retry settings."""
        return cls(
            concurrency=ctx.concurrency,
            max_request_chars=ctx.max_request_chars,
            max_split_depth=ctx.max_split_depth,
            retry_count=api.retry_count,
            retry_delay_seconds=api.retry_delay_seconds,
            max_continuations=api.max_continuations,
            snippet_mode=ctx.batching_mode == BatchingMode.SNIPPET,
        )


@dataclass
class ExecutionResult:
    """Findings and failures from one executor run."""

    findings: list[Finding] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)
    jobs: list[BatchJob] = field(default_factory=list)


class BatchExecutor:
    """Runs batches against the review service through a bounded worker pool."""

    def __init__(
        self,
        service: ReviewService,
        response_format: ResponseFormat,
        settings: ExecutorSettings | None = None,
        stats: RunStats | None = None,
        diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            service: Transport used to send request bodies
            response_format: Builds requests and parses responses
            settings: Concurrency, size and retry limits
            stats: Run-scoped accumulator for calls, tokens and failures
            diagnostics_by_file: Known local diagnostics to mention in prompts
        """
        self.service = service
        self.format = response_format
        self.settings = settings or ExecutorSettings()
        self.stats = stats if stats is not None else RunStats()
        self.diagnostics_by_file = diagnostics_by_file or {}

    async def execute(self, batches: Sequence[Batch]) -> ExecutionResult:
        """Execute all batches and collect their findings.

        Failed batches contribute no findings and a BatchFailure record.
        Findings are returned in batch order regardless of completion order.

        Args:
            batches: Planned batches

        Returns:
            ExecutionResult with findings, failures and every job created
        """
        if not batches:
            return ExecutionResult()

        queue: asyncio.Queue[BatchJob] = asyncio.Queue()
        jobs: list[BatchJob] = []
        for i, batch in enumerate(batches):
            job = BatchJob(batch=batch, order=(i,))
            jobs.append(job)
            queue.put_nowait(job)

        logger.info(
            f"Executing {len(batches)} batches with {self.settings.concurrency} workers"
        )

        workers = [
            asyncio.create_task(self._worker(queue, jobs), name=f"batch-worker-{i}")
            for i in range(self.settings.concurrency)
        ]
        try:
            await queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        finished = sorted(
            (job for job in jobs if job.state != BatchState.BISECTED),
            key=lambda job: job.order,
        )
        result = ExecutionResult(jobs=jobs)
        for job in finished:
            result.findings.extend(job.findings)
            if job.failure:
                result.failures.append(job.failure)

        logger.info(
            f"Execution complete: {len(result.findings)} findings, "
            f"{len(result.failures)} failed batches, {self.stats.llm_calls} calls"
        )
        return result

    async def _worker(self, queue: "asyncio.Queue[BatchJob]", jobs: list[BatchJob]) -> None:
        """Consume jobs until cancelled; children go back on the queue."""
        while True:
            job = await queue.get()
            try:
                for child in await self._run_job(job):
                    jobs.append(child)
                    queue.put_nowait(child)
            except Exception as e:
                logger.exception(f"Batch {job.batch_id} crashed: {e}")
                if BatchState.FAILED in _TRANSITIONS[job.state]:
                    self._fail(job, ErrorClass.OTHER.value, str(e))
                elif job.state == BatchState.PENDING:
                    job.failure = BatchFailure(job.batch_id, ErrorClass.OTHER.value, str(e))
                    self.stats.record_failure(ErrorClass.OTHER.value)
            finally:
                queue.task_done()

    async def _run_job(self, job: BatchJob) -> list[BatchJob]:
        """Drive one job to a terminal state; return any child jobs."""
        batch = job.batch
        if len(batch.files) > 1 and batch.request_chars > self.settings.max_request_chars:
            logger.warning(
                f"Batch {batch.batch_id} estimated at {batch.request_chars} chars "
                f"(limit {self.settings.max_request_chars}); splitting before send"
            )
            job.transition(BatchState.BISECTED)
            self.stats.splits += 1
            return job.children(job.split_depth)

        body = self.format.build_request(
            batch.files,
            snippet_mode=self.settings.snippet_mode,
            diagnostics_by_file=self._diagnostics_for(batch),
        )

        while True:
            job.transition(BatchState.SENT)
            try:
                result = self.format.parse(await self._send(body))
                break
            except ReviewApiError as e:
                if e.error_class == ErrorClass.SIZE_REJECTED:
                    return self._handle_size_rejection(job, e)
                if e.error_class.retryable and job.attempts < self.settings.retry_count:
                    await self._backoff(job, e)
                    continue
                self._fail(job, e.error_class.value, str(e))
                return []
            except ResponseParseError as e:
                if job.attempts < self.settings.retry_count:
                    await self._backoff(job, e)
                    continue
                self._fail(job, ErrorClass.PARSE.value, str(e))
                return []

        self.stats.add_usage(result.prompt_tokens, result.completion_tokens)
        job.findings = list(result.findings)
        if result.truncated:
            await self._continue(job, body, result)
        job.transition(BatchState.DONE)
        logger.debug(f"Batch {batch.batch_id} done with {len(job.findings)} findings")
        return []

    async def _continue(self, job: BatchJob, base_body: dict[str, Any], result: ParseResult) -> None:
        """Request the rest of a truncated response; keep partial findings on failure."""
        job.transition(BatchState.TRUNCATED)
        partial_content = result.content
        while job.continuations < self.settings.max_continuations:
            body = self.format.build_continuation(base_body, partial_content, job.findings)
            if body is None:
                break
            job.continuations += 1
            self.stats.continuations += 1
            logger.info(
                f"Batch {job.batch_id} truncated; continuation "
                f"{job.continuations}/{self.settings.max_continuations}"
            )
            job.transition(BatchState.SENT)
            try:
                continuation = self.format.parse(await self._send(body))
            except (ReviewApiError, ResponseParseError) as e:
                logger.warning(
                    f"Continuation for batch {job.batch_id} failed ({e}); "
                    f"keeping {len(job.findings)} partial findings"
                )
                return
            self.stats.add_usage(continuation.prompt_tokens, continuation.completion_tokens)
            job.findings = merge_continuation(job.findings, continuation)
            if not continuation.truncated:
                return
            job.transition(BatchState.TRUNCATED)
            partial_content = continuation.content

        logger.warning(
            f"Batch {job.batch_id} still truncated after {job.continuations} continuations; "
            f"keeping {len(job.findings)} partial findings"
        )

    def _handle_size_rejection(self, job: BatchJob, error: ReviewApiError) -> list[BatchJob]:
        """Bisect a rejected batch, or fail it once it can't be split further."""
        if len(job.batch.files) > 1 and job.split_depth < self.settings.max_split_depth:
            logger.warning(
                f"Batch {job.batch_id} rejected as too large; "
                f"splitting {len(job.batch.files)} files (depth {job.split_depth + 1})"
            )
            job.transition(BatchState.BISECTED)
            self.stats.splits += 1
            return job.children(job.split_depth + 1)
        self._fail(job, ErrorClass.SIZE_REJECTED.value, str(error))
        return []

    async def _send(self, body: dict[str, Any]) -> Any:
        """Send one request, recording call count and latency."""
        self.stats.call_started()
        start_time = time.monotonic()
        try:
            return await self.service.send(body)
        except ReviewApiError:
            raise
        except Exception as e:
            raise classify_error(e) from e
        finally:
            self.stats.call_finished(int((time.monotonic() - start_time) * 1000))

    async def _backoff(self, job: BatchJob, error: Exception) -> None:
        """Sleep `retry_delay * 2**attempt` before the next attempt."""
        job.transition(BatchState.RETRYING)
        delay = self.settings.retry_delay_seconds * (2**job.attempts)
        job.attempts += 1
        logger.warning(
            f"Batch {job.batch_id} attempt {job.attempts}/{self.settings.retry_count} "
            f"failed ({error}); retrying in {delay:.1f}s"
        )
        await asyncio.sleep(delay)

    def _fail(self, job: BatchJob, error_class: str, message: str) -> None:
        """Mark a job failed; it contributes no findings."""
        job.transition(BatchState.FAILED)
        job.findings = []
        job.failure = BatchFailure(batch_id=job.batch_id, error_class=error_class, message=message)
        self.stats.record_failure(error_class)
        logger.error(f"Batch {job.batch_id} dropped ({error_class}): {message}")

    def _diagnostics_for(self, batch: Batch) -> dict[str, Sequence[Diagnostic]]:
        return {
            path: self.diagnostics_by_file[path]
            for path in batch.paths
            if path in self.diagnostics_by_file
        }
