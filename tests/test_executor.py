"""Tests for the batch executor."""

import asyncio
import json

import httpx
import pytest


def _batch(batch_id: str, *paths: str):
    from agent_review.models.units import Batch, BatchFile

    return Batch(batch_id, [BatchFile(path, "x = 1") for path in paths])


def _executor(service, **settings):
    from agent_review.parsing.formats import OpenAIFormat
    from agent_review.pipeline.executor import BatchExecutor, ExecutorSettings

    settings.setdefault("retry_delay_seconds", 0)
    return BatchExecutor(service, OpenAIFormat(model="test-model"), ExecutorSettings(**settings))


def _issue(path: str, line: int, message: str, severity: str = "warning"):
    return {"file": path, "line": line, "message": message, "severity": severity}


class TestBatchJob:
    """Tests for the batch state machine."""

    def test_illegal_transition(self):
        """Test moves outside the transition table are rejected."""
        from agent_review.errors import InvalidTransitionError
        from agent_review.pipeline.executor import BatchJob, BatchState

        job = BatchJob(batch=_batch("batch-1", "a.py"), order=(0,))
        with pytest.raises(InvalidTransitionError):
            job.transition(BatchState.DONE)

        job.transition(BatchState.SENT)
        job.transition(BatchState.DONE)
        with pytest.raises(InvalidTransitionError):
            job.transition(BatchState.SENT)
        assert job.history == [BatchState.PENDING, BatchState.SENT, BatchState.DONE]

    def test_children_inherit_order(self):
        """Test bisected children sort right after their parent position."""
        from agent_review.pipeline.executor import BatchJob

        job = BatchJob(batch=_batch("batch-1", "a.py", "b.py", "c.py"), order=(0,))
        left, right = job.children(1)

        assert (left.order, right.order) == ((0, 1), (0, 2))
        assert left.batch.paths == ["a.py", "b.py"]
        assert right.split_depth == 1

    def test_settings_clamp_concurrency(self):
        """Test concurrency is clamped to 1..8."""
        from agent_review.pipeline.executor import ExecutorSettings

        assert ExecutorSettings(concurrency=0).concurrency == 1
        assert ExecutorSettings(concurrency=64).concurrency == 8


class TestExecute:
    """Tests for BatchExecutor.execute."""

    @pytest.mark.asyncio
    async def test_findings_per_batch(self, fake_service, openai_payload, issues_body, paths_in_request):
        """Test each batch is sent once and findings come back in batch order."""

        def handler(body):
            return openai_payload(
                issues_body(*[_issue(path, 1, f"issue in {path}") for path in paths_in_request(body)])
            )

        service = fake_service(handler)
        executor = _executor(service)
        result = await executor.execute(
            [_batch("batch-1", "a.py", "b.py"), _batch("batch-2", "c.py")]
        )

        assert len(service.calls) == 2
        assert [f.file for f in result.findings] == ["a.py", "b.py", "c.py"]
        assert result.failures == []
        assert executor.stats.prompt_tokens == 20
        assert executor.stats.completion_tokens == 40

    @pytest.mark.asyncio
    async def test_no_batches(self, fake_service):
        """Test an empty plan sends nothing."""
        service = fake_service(lambda body: pytest.fail("unexpected send"))
        result = await _executor(service).execute([])

        assert result.findings == []
        assert service.calls == []

    @pytest.mark.asyncio
    async def test_oversized_batch_split_before_send(
        self, fake_service, openai_payload, issues_body, paths_in_request
    ):
        """Test a batch over the size limit is bisected before any call."""
        from agent_review.pipeline.executor import BatchState

        service = fake_service(lambda body: openai_payload(issues_body()))
        executor = _executor(service, max_request_chars=80)
        result = await executor.execute([_batch("batch-1", "a.py", "b.py")])

        assert len(service.calls) == 2
        assert sorted(paths_in_request(call) for call in service.calls) == [["a.py"], ["b.py"]]
        parent = result.jobs[0]
        assert parent.history == [BatchState.PENDING, BatchState.BISECTED]
        assert executor.stats.splits == 1

    @pytest.mark.asyncio
    async def test_size_rejection_bisects(self, fake_service, openai_payload, issues_body, paths_in_request):
        """Test a 413 on the first call splits the batch into two sends."""
        from agent_review.api.errors import ErrorClass, ReviewApiError

        def handler(body):
            paths = paths_in_request(body)
            if len(paths) > 1:
                raise ReviewApiError("HTTP 413", ErrorClass.SIZE_REJECTED, 413)
            return openai_payload(issues_body(_issue(paths[0], 2, "problem")))

        service = fake_service(handler)
        result = await _executor(service).execute([_batch("batch-1", "a.py", "b.py")])

        assert len(service.calls) == 3
        assert [f.file for f in result.findings] == ["a.py", "b.py"]
        assert [job.batch_id for job in result.jobs] == ["batch-1", "batch-1.1", "batch-1.2"]
        assert [job.split_depth for job in result.jobs] == [0, 1, 1]

    @pytest.mark.asyncio
    async def test_size_rejection_stops_at_max_depth(self, fake_service):
        """Test rejected batches fail once the split depth limit is reached."""
        from agent_review.api.errors import ErrorClass, ReviewApiError

        def handler(body):
            raise ReviewApiError("HTTP 413", ErrorClass.SIZE_REJECTED, 413)

        service = fake_service(handler)
        result = await _executor(service, max_split_depth=1).execute(
            [_batch("batch-1", "a.py", "b.py", "c.py", "d.py")]
        )

        assert len(service.calls) == 3
        assert [f.batch_id for f in result.failures] == ["batch-1.1", "batch-1.2"]
        assert {f.error_class for f in result.failures} == {"size_rejected"}

    @pytest.mark.asyncio
    async def test_single_file_size_rejection_fails(self, fake_service):
        """Test a rejected single-file batch can't be split and fails."""
        from agent_review.api.errors import ErrorClass, ReviewApiError

        def handler(body):
            raise ReviewApiError("HTTP 400: prompt too long", ErrorClass.SIZE_REJECTED, 400)

        service = fake_service(handler)
        result = await _executor(service).execute([_batch("batch-1", "huge.py")])

        assert len(service.calls) == 1
        assert result.failures[0].error_class == "size_rejected"

    @pytest.mark.asyncio
    async def test_truncation_continues_and_merges(self, fake_service, openai_payload):
        """Test a truncated answer is completed by a continuation and deduplicated."""
        from agent_review.pipeline.executor import BatchState

        full = json.dumps(
            {"issues": [_issue("a.py", 3, "unused import"), _issue("a.py", 7, "eval on input")]}
        )
        truncated = full[: full.index('"eval') + 4]

        def handler(body):
            if len(body["messages"]) > 2:
                return openai_payload(full)
            return openai_payload(truncated, finish_reason="length")

        service = fake_service(handler)
        executor = _executor(service)
        result = await executor.execute([_batch("batch-1", "a.py")])

        assert len(service.calls) == 2
        assert [(f.line, f.message) for f in result.findings] == [
            (3, "unused import"),
            (7, "eval on input"),
        ]
        assert result.jobs[0].history == [
            BatchState.PENDING,
            BatchState.SENT,
            BatchState.TRUNCATED,
            BatchState.SENT,
            BatchState.DONE,
        ]
        assert executor.stats.continuations == 1

    @pytest.mark.asyncio
    async def test_continued_matches_single_clean_response(self, fake_service, openai_payload):
        """Test truncation plus continuation ends where one clean response would."""
        full = json.dumps(
            {
                "issues": [
                    _issue("a.py", 2, "mutable default argument"),
                    _issue("a.py", 5, "bare except swallows errors", "error"),
                    _issue("a.py", 9, "unused loop variable", "info"),
                ]
            }
        )
        truncated = full[: full.index('"bare') + 6]

        def two_step(body):
            return openai_payload(full if len(body["messages"]) > 2 else truncated)

        continued = await _executor(fake_service(two_step)).execute([_batch("batch-1", "a.py")])
        clean = await _executor(fake_service(lambda body: openai_payload(full))).execute(
            [_batch("batch-1", "a.py")]
        )

        assert continued.findings == clean.findings

    @pytest.mark.asyncio
    async def test_failed_continuation_keeps_partial(self, fake_service, openai_payload):
        """Test partial findings survive a failing continuation."""
        from agent_review.api.errors import ErrorClass, ReviewApiError
        from agent_review.pipeline.executor import BatchState

        full = json.dumps({"issues": [_issue("a.py", 3, "first"), _issue("a.py", 9, "second")]})
        truncated = full[: full.index('"second') + 3]

        def handler(body):
            if len(body["messages"]) > 2:
                raise ReviewApiError("HTTP 500", ErrorClass.TRANSIENT_NETWORK, 500)
            return openai_payload(truncated)

        result = await _executor(fake_service(handler)).execute([_batch("batch-1", "a.py")])

        assert [f.message for f in result.findings] == ["first"]
        assert result.failures == []
        assert result.jobs[0].state == BatchState.DONE

    @pytest.mark.asyncio
    async def test_continuation_limit(self, fake_service, openai_payload):
        """Test continuations stop at the configured maximum."""
        full = json.dumps({"issues": [_issue("a.py", 1, "one"), _issue("a.py", 2, "two")]})
        truncated = full[: full.index('"two') + 2]

        service = fake_service(lambda body: openai_payload(truncated))
        result = await _executor(service, max_continuations=2).execute([_batch("batch-1", "a.py")])

        assert len(service.calls) == 3
        assert result.jobs[0].continuations == 2
        assert [f.message for f in result.findings] == ["one"]

    @pytest.mark.asyncio
    async def test_format_without_continuation_keeps_partial(self, fake_service, openai_payload):
        """Test a truncated answer is final when the format can't continue it."""
        from agent_review.parsing.formats import OpenAIFormat
        from agent_review.pipeline.executor import BatchExecutor, BatchState, ExecutorSettings

        class SingleShotFormat(OpenAIFormat):
            def build_continuation(self, base_body, partial_content, parsed):
                return None

        full = json.dumps({"issues": [_issue("a.py", 1, "one"), _issue("a.py", 2, "two")]})
        truncated = full[: full.index('"two') + 2]
        service = fake_service(lambda body: openai_payload(truncated))
        executor = BatchExecutor(service, SingleShotFormat(model="test-model"), ExecutorSettings())

        result = await executor.execute([_batch("batch-1", "a.py")])

        assert len(service.calls) == 1
        assert [f.message for f in result.findings] == ["one"]
        assert result.jobs[0].history == [
            BatchState.PENDING,
            BatchState.SENT,
            BatchState.TRUNCATED,
            BatchState.DONE,
        ]
        assert executor.stats.continuations == 0

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self, fake_service, openai_payload, issues_body):
        """Test retryable errors back off and retry until success."""
        from agent_review.api.errors import ErrorClass, ReviewApiError
        from agent_review.pipeline.executor import BatchState

        responses = iter(
            [
                ReviewApiError("HTTP 429", ErrorClass.RATE_LIMITED, 429),
                httpx.ConnectError("connection refused"),
                openai_payload(issues_body(_issue("a.py", 1, "ok"))),
            ]
        )

        def handler(body):
            item = next(responses)
            if isinstance(item, Exception):
                raise item
            return item

        service = fake_service(handler)
        result = await _executor(service, retry_count=3).execute([_batch("batch-1", "a.py")])

        assert len(service.calls) == 3
        assert len(result.findings) == 1
        job = result.jobs[0]
        assert job.attempts == 2
        assert job.history == [
            BatchState.PENDING,
            BatchState.SENT,
            BatchState.RETRYING,
            BatchState.SENT,
            BatchState.RETRYING,
            BatchState.SENT,
            BatchState.DONE,
        ]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, fake_service):
        """Test a batch fails after retry_count retries."""
        from agent_review.api.errors import ErrorClass, ReviewApiError

        def handler(body):
            raise ReviewApiError("HTTP 429", ErrorClass.RATE_LIMITED, 429)

        service = fake_service(handler)
        executor = _executor(service, retry_count=2)
        result = await executor.execute([_batch("batch-1", "a.py")])

        assert len(service.calls) == 3
        assert result.failures[0].error_class == "rate_limited"
        assert executor.stats.failures_by_class == {"rate_limited": 1}

    @pytest.mark.asyncio
    async def test_backoff_delays_double(self, fake_service, openai_payload, issues_body):
        """Test exponential backoff delays."""
        from unittest.mock import AsyncMock, patch

        from agent_review.api.errors import ErrorClass, ReviewApiError

        calls = {"count": 0}

        def handler(body):
            calls["count"] += 1
            if calls["count"] < 3:
                raise ReviewApiError("HTTP 503", ErrorClass.TRANSIENT_NETWORK, 503)
            return openai_payload(issues_body())

        sleep = AsyncMock()
        with patch("agent_review.pipeline.executor.asyncio.sleep", sleep):
            await _executor(fake_service(handler), retry_delay_seconds=0.5).execute(
                [_batch("batch-1", "a.py")]
            )

        assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_unparseable_response_fails_as_parse(self, fake_service, openai_payload):
        """Test garbage responses are retried and then fail with the parse class."""
        service = fake_service(lambda body: openai_payload("Sorry, I can't help with that."))
        result = await _executor(service, retry_count=1).execute([_batch("batch-1", "a.py")])

        assert len(service.calls) == 2
        assert result.findings == []
        assert result.failures[0].error_class == "parse"

    @pytest.mark.asyncio
    async def test_non_json_body_retried_like_bad_content(self, fake_service, openai_payload, issues_body):
        """Test a non-JSON HTTP body is retried and then fails with the parse class."""
        from agent_review.api.errors import ErrorClass, ReviewApiError

        def garbage(body):
            raise ReviewApiError("Response is not JSON: <html>", ErrorClass.PARSE, 200)

        service = fake_service(garbage)
        result = await _executor(service, retry_count=1).execute([_batch("batch-1", "a.py")])

        assert len(service.calls) == 2
        assert result.failures[0].error_class == "parse"

        responses = iter([None, openai_payload(issues_body(_issue("a.py", 1, "ok")))])

        def recovers(body):
            item = next(responses)
            if item is None:
                garbage(body)
            return item

        result = await _executor(fake_service(recovers), retry_count=1).execute([_batch("batch-2", "a.py")])

        assert [f.message for f in result.findings] == ["ok"]
        assert result.failures == []

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, fake_service, openai_payload, issues_body):
        """Test non-retryable failures drop only their own batch."""

        def handler(body):
            if "bad.py" in body["messages"][1]["content"]:
                raise RuntimeError("boom")
            return openai_payload(issues_body(_issue("good.py", 1, "fine")))

        service = fake_service(handler)
        result = await _executor(service).execute(
            [_batch("batch-1", "bad.py"), _batch("batch-2", "good.py")]
        )

        assert len(service.calls) == 2
        assert [f.file for f in result.findings] == ["good.py"]
        assert [(f.batch_id, f.error_class) for f in result.failures] == [("batch-1", "other")]

    @pytest.mark.asyncio
    async def test_crash_before_send_is_recorded(self, fake_service):
        """Test a job that crashes while pending still yields a failure record."""
        from agent_review.parsing.formats import OpenAIFormat
        from agent_review.pipeline.executor import BatchExecutor, BatchState

        class BrokenFormat(OpenAIFormat):
            def build_request(self, files, snippet_mode=False, diagnostics_by_file=None):
                raise RuntimeError("cannot render")

        service = fake_service(lambda body: pytest.fail("unexpected send"))
        result = await BatchExecutor(service, BrokenFormat(model="m")).execute(
            [_batch("batch-1", "a.py")]
        )

        assert service.calls == []
        assert result.failures[0].error_class == "other"
        assert result.jobs[0].state == BatchState.PENDING

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, fake_service, openai_payload, issues_body):
        """Test no more than `concurrency` calls are in flight."""
        service = fake_service(lambda body: openai_payload(issues_body()), delay=0.01)
        executor = _executor(service, concurrency=2)
        await executor.execute([_batch(f"batch-{i}", f"f{i}.py") for i in range(6)])

        assert len(service.calls) == 6
        assert service.max_in_flight == 2
        assert executor.stats.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_order_independent_of_completion(self, openai_payload, issues_body, paths_in_request):
        """Test findings follow batch order even when later batches finish first."""

        class SlowFirstService:
            async def send(self, body):
                path = paths_in_request(body)[0]
                if path == "f0.py":
                    await asyncio.sleep(0.05)
                return openai_payload(issues_body(_issue(path, 1, "m")))

        result = await _executor(SlowFirstService(), concurrency=3).execute(
            [_batch(f"batch-{i}", f"f{i}.py") for i in range(3)]
        )

        assert [f.file for f in result.findings] == ["f0.py", "f1.py", "f2.py"]

    @pytest.mark.asyncio
    async def test_diagnostics_only_for_batch_files(self, fake_service, openai_payload, issues_body):
        """Test known diagnostics are rendered for files in the batch only."""
        from agent_review.models.findings import Diagnostic
        from agent_review.parsing.formats import OpenAIFormat
        from agent_review.pipeline.executor import BatchExecutor, ExecutorSettings

        diagnostics = {
            "a.py": [Diagnostic(line=3, message="unused variable 'x'")],
            "z.py": [Diagnostic(line=1, message="missing docstring")],
        }
        service = fake_service(lambda body: openai_payload(issues_body()))
        executor = BatchExecutor(
            service,
            OpenAIFormat(model="m"),
            ExecutorSettings(retry_delay_seconds=0),
            diagnostics_by_file=diagnostics,
        )
        await executor.execute([_batch("batch-1", "a.py")])

        prompt = service.calls[0]["messages"][1]["content"]
        assert "unused variable 'x'" in prompt
        assert "missing docstring" not in prompt
