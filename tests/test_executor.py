"""Tests for the streaming executor."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

import httpx
import pytest

from tokensmith.ai.errors import ErrorCategory, ExecutionCancelled, ExecutionError
from tokensmith.ai.executor import CancelToken, StreamingExecutor, unwrap_candidate
from tokensmith.ai.jobs import JobBoard, JobStatus
from tokensmith.ai.planner import ModelRef, MutationPlan, PlanResult

MODEL = ModelRef(provider="openrouter", id="google/gemini-2.5-flash", name="Gemini 2.5 Flash")


def _lines(*events: dict[str, Any]) -> bytes:
    return b"".join(json.dumps(event).encode("utf-8") + b"\n" for event in events)


def _plan_result() -> PlanResult:
    plan = MutationPlan.from_dict({"primary": [{"path": "designV2.components.button.variants.primary"}]})
    return PlanResult(plan=plan, plan_time_ms=640.0, model=MODEL)


def _candidate(sample_design: dict) -> dict:
    candidate = json.loads(json.dumps(sample_design))
    candidate["components"]["button"]["variants"]["primary"]["backgroundColor"] = "#dc2626"
    return candidate


async def _eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestExecute:
    @pytest.mark.asyncio
    async def test_folds_stream_into_result(self, mock_client_factory, sample_design) -> None:
        candidate = _candidate(sample_design)
        captured: dict[str, Any] = {}
        body = _lines(
            {"type": "plan", "chunks": [{"index": i, "path": f"p{i}"} for i in range(3)]},
            {"type": "chunk_start", "index": 0},
            {"type": "chunk_complete", "index": 0, "ok": True, "ms": 120},
            {"type": "chunk_complete", "index": 1, "ok": False, "error": "skip: nothing to change"},
            {"type": "heartbeat"},
            {"type": "chunk_start", "index": 2},
            {"type": "chunk_complete", "index": 2, "ok": False, "error": "model timeout"},
            {"type": "result", "success": True, "enhancedData": {"designV2": candidate}, "metadata": {"totalTimeMs": 1234}},
        )

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content.decode("utf-8"))
            return httpx.Response(200, content=body, headers={"content-type": "application/x-ndjson"})

        client = mock_client_factory(handler)
        executor = StreamingExecutor("http://ai.test/api", client=client)
        board = JobBoard()

        result = await executor.execute(sample_design, "red primary buttons", MODEL, _plan_result(), board=board)

        assert captured["url"] == "http://ai.test/api/ai-enhance-content-multipart-stream"
        request_body = captured["body"]
        assert request_body["data"] == {"designV2": sample_design}
        assert request_body["prompt"] == "red primary buttons"
        assert request_body["model"] == MODEL.to_dict()
        assert request_body["mode"] == "single"
        assert request_body["plannerOutput"]["plan"]["primary"][0]["path"] == "designV2.components.button.variants.primary"

        assert result.document == candidate
        summary = result.summary
        assert (summary.chunks_planned, summary.chunks_succeeded, summary.chunks_failed, summary.chunks_skipped) == (
            3,
            1,
            1,
            1,
        )
        assert summary.executor_total_ms == 1234.0
        assert summary.planner_model_id == "google/gemini-2.5-flash"
        assert summary.plan_time_ms == 640.0
        assert [job.status for job in summary.jobs] == [JobStatus.OK, JobStatus.ERROR, JobStatus.ERROR]
        assert summary.to_dict()["executor"]["chunksSkipped"] == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_counts_fall_back_to_metadata(self, mock_client_factory, sample_design) -> None:
        body = _lines(
            {
                "type": "result",
                "success": True,
                "enhancedData": sample_design,
                "metadata": {"chunksPlanned": 4, "chunksSucceeded": 3, "chunksFailed": 1, "chunksSkipped": 0},
            }
        )
        client = mock_client_factory(lambda request: httpx.Response(200, content=body))
        executor = StreamingExecutor("http://ai.test/api", client=client)

        result = await executor.execute(sample_design, "tweak", MODEL, MutationPlan())

        assert result.document == sample_design
        assert result.summary.chunks_planned == 4
        assert result.summary.chunks_succeeded == 3
        assert result.summary.executor_total_ms is not None
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_event_raises(self, mock_client_factory, sample_design) -> None:
        body = _lines(
            {"type": "plan", "chunks": [{"index": 0, "path": "p0"}]},
            {"type": "error", "message": "quota exceeded", "details": {"provider": "x"}},
        )
        client = mock_client_factory(lambda request: httpx.Response(200, content=body))
        executor = StreamingExecutor("http://ai.test/api", client=client)

        with pytest.raises(ExecutionError) as excinfo:
            await executor.execute(sample_design, "tweak", MODEL, _plan_result())

        assert excinfo.value.message == "quota exceeded"
        assert excinfo.value.retryable is True
        assert [job.status for job in excinfo.value.jobs] == [JobStatus.PENDING]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_unsuccessful_result_raises(self, mock_client_factory, sample_design) -> None:
        body = _lines({"type": "result", "success": False, "error": "merge failed"})
        client = mock_client_factory(lambda request: httpx.Response(200, content=body))
        executor = StreamingExecutor("http://ai.test/api", client=client)

        with pytest.raises(ExecutionError) as excinfo:
            await executor.execute(sample_design, "tweak", MODEL, _plan_result())

        assert excinfo.value.details["error"] == "merge failed"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stream_without_result_raises(self, mock_client_factory, sample_design) -> None:
        body = _lines({"type": "plan", "chunks": []})
        client = mock_client_factory(lambda request: httpx.Response(200, content=body))
        executor = StreamingExecutor("http://ai.test/api", client=client)

        with pytest.raises(ExecutionError, match="without a result"):
            await executor.execute(sample_design, "tweak", MODEL, _plan_result())
        await client.aclose()

    @pytest.mark.asyncio
    async def test_reading_stops_at_result(self, mock_client_factory, sample_design) -> None:
        candidate = _candidate(sample_design)
        resumed: list[str] = []

        async def stream() -> AsyncIterator[bytes]:
            yield _lines(
                {"type": "plan", "chunks": [{"index": 0, "path": "p0"}]},
                {"type": "chunk_start", "index": 0},
                {"type": "result", "success": True, "enhancedData": candidate, "metadata": {"totalTimeMs": 10}},
                {"type": "chunk_complete", "index": 0, "ok": True},
            )
            resumed.append("after result")
            yield _lines({"type": "error", "message": "late failure"})

        client = mock_client_factory(lambda request: httpx.Response(200, content=stream()))
        executor = StreamingExecutor("http://ai.test/api", client=client)
        board = JobBoard()

        result = await executor.execute(sample_design, "tweak", MODEL, _plan_result(), board=board)

        assert result.document == candidate
        assert [job.status for job in board.jobs()] == [JobStatus.RUNNING]
        assert result.summary.chunks_succeeded == 0
        assert resumed == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_malformed_result_line_raises(self, mock_client_factory, sample_design) -> None:
        body = _lines({"type": "plan", "chunks": [{"index": 0, "path": "p0"}]}) + (
            b'{"type": "result", "success": true, "enhancedData": {"tokens": \n'
        )
        client = mock_client_factory(lambda request: httpx.Response(200, content=body))
        executor = StreamingExecutor("http://ai.test/api", client=client)
        board = JobBoard()

        with pytest.raises(ExecutionError) as excinfo:
            await executor.execute(sample_design, "tweak", MODEL, _plan_result(), board=board)

        assert excinfo.value.message == "Executor sent a malformed terminal event"
        assert excinfo.value.details["line"].startswith('{"type": "result"')
        assert [job.status for job in board.jobs()] == [JobStatus.PENDING]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_malformed_progress_lines_are_skipped(self, mock_client_factory, sample_design) -> None:
        body = (
            _lines({"type": "plan", "chunks": [{"index": 0, "path": "p0"}]})
            + b'{"type": "chunk_start", "index": \n'
            + _lines(
                {"type": "chunk_complete", "index": 0, "ok": True},
                {"type": "result", "success": True, "enhancedData": sample_design},
            )
        )
        client = mock_client_factory(lambda request: httpx.Response(200, content=body))
        executor = StreamingExecutor("http://ai.test/api", client=client)

        result = await executor.execute(sample_design, "tweak", MODEL, _plan_result())

        assert result.summary.chunks_succeeded == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_status(self, mock_client_factory, sample_design) -> None:
        client = mock_client_factory(lambda request: httpx.Response(502, text="bad gateway"))
        executor = StreamingExecutor("http://ai.test/api", client=client)

        with pytest.raises(ExecutionError) as excinfo:
            await executor.execute(sample_design, "tweak", MODEL, _plan_result())

        assert excinfo.value.message == "Executor failed (502): bad gateway"
        assert excinfo.value.details["status_code"] == 502
        await client.aclose()

    @pytest.mark.asyncio
    async def test_dropped_connection_keeps_job_states(self, mock_client_factory, sample_design) -> None:
        async def stream() -> AsyncIterator[bytes]:
            yield _lines(
                {"type": "plan", "chunks": [{"index": 0, "path": "p0"}, {"index": 1, "path": "p1"}]},
                {"type": "chunk_complete", "index": 0, "ok": True},
                {"type": "chunk_start", "index": 1},
            )
            raise httpx.ReadError("connection reset")

        client = mock_client_factory(lambda request: httpx.Response(200, content=stream()))
        executor = StreamingExecutor("http://ai.test/api", client=client)
        board = JobBoard()

        with pytest.raises(ExecutionError) as excinfo:
            await executor.execute(sample_design, "tweak", MODEL, _plan_result(), board=board)

        assert excinfo.value.category == ErrorCategory.NETWORK
        assert [job.status for job in board.jobs()] == [JobStatus.OK, JobStatus.RUNNING]
        await client.aclose()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_marks_unfinished_jobs(self, mock_client_factory, sample_design) -> None:
        release = asyncio.Event()

        async def stream() -> AsyncIterator[bytes]:
            yield _lines(
                {"type": "plan", "chunks": [{"index": i, "path": f"p{i}"} for i in range(3)]},
                {"type": "chunk_complete", "index": 0, "ok": True},
                {"type": "chunk_start", "index": 1},
            )
            await release.wait()
            yield _lines({"type": "result", "success": True, "enhancedData": sample_design})

        client = mock_client_factory(lambda request: httpx.Response(200, content=stream()))
        executor = StreamingExecutor("http://ai.test/api", client=client)
        board = JobBoard()
        token = CancelToken()

        task = asyncio.create_task(
            executor.execute(sample_design, "tweak", MODEL, _plan_result(), cancel_token=token, board=board)
        )
        await _eventually(lambda: board.get(1) is not None and board.get(1).status is JobStatus.RUNNING)
        token.cancel("user")

        with pytest.raises(ExecutionCancelled) as excinfo:
            await task

        assert excinfo.value.reason == "user"
        assert excinfo.value.details == {"reason": "user"}
        statuses = [(job.status, job.error) for job in board.jobs()]
        assert statuses == [
            (JobStatus.OK, None),
            (JobStatus.ERROR, "cancelled"),
            (JobStatus.ERROR, "cancelled"),
        ]
        assert board.unfinished == 0
        release.set()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_pre_cancelled_token_never_sends(self, mock_client_factory, sample_design) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(200, content=b"")

        client = mock_client_factory(handler)
        executor = StreamingExecutor("http://ai.test/api", client=client)
        token = CancelToken()
        token.cancel()

        with pytest.raises(ExecutionCancelled):
            await executor.execute(sample_design, "tweak", MODEL, _plan_result(), cancel_token=token)

        assert calls == []
        await client.aclose()

    def test_token_keeps_first_reason(self) -> None:
        token = CancelToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"


def test_unwrap_candidate() -> None:
    assert unwrap_candidate({"designV2": {"tokens": {}}}) == {"tokens": {}}
    assert unwrap_candidate({"tokens": {}}) == {"tokens": {}}
    assert unwrap_candidate("nope") is None
