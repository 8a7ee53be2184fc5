"""Streaming client for the chunked execution endpoint.

One POST starts a run; the response body is NDJSON. ``plan`` declares the
chunk jobs, ``chunk_start``/``chunk_complete`` drive each job forward, and a
single ``result`` (or ``error``) event ends the run. The merged candidate
document comes back in ``result.enhancedData``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx

from ..documents.schema import unwrap_envelope
from ..services.events import EventBus
from .errors import ErrorCategory, ExecutionCancelled, ExecutionError
from .jobs import CANCELLED, Job, JobBoard
from .planner import ModelRef, MutationPlan, PlanResult
from .scope_index import ROOT_KEY
from .stream import StreamEvent, iter_events

__all__ = [
    "EXECUTE_ENDPOINT",
    "CancelToken",
    "RunSummary",
    "ExecutionResult",
    "StreamingExecutor",
]

LOGGER = logging.getLogger(__name__)

EXECUTE_ENDPOINT = "/ai-enhance-content-multipart-stream"
EXECUTION_MODE = "single"

T = TypeVar("T")


class CancelToken:
    """Caller-owned switch that aborts an in-flight execution."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = CANCELLED) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class _StreamCancelled(Exception):
    pass


@dataclass(slots=True, frozen=True)
class RunSummary:
    """Immutable record of one completed execution."""

    planner_model_id: str | None = None
    plan_time_ms: float | None = None
    executor_total_ms: float | None = None
    chunks_planned: int = 0
    chunks_succeeded: int = 0
    chunks_failed: int = 0
    chunks_skipped: int = 0
    jobs: tuple[Job, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "planner": {"modelId": self.planner_model_id, "ms": self.plan_time_ms},
            "executor": {
                "totalMs": self.executor_total_ms,
                "chunksPlanned": self.chunks_planned,
                "chunksSucceeded": self.chunks_succeeded,
                "chunksFailed": self.chunks_failed,
                "chunksSkipped": self.chunks_skipped,
                "chunks": [job.to_dict() for job in self.jobs],
            },
            "metadata": deepcopy(dict(self.metadata)),
        }


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    document: dict[str, Any]
    summary: RunSummary


class StreamingExecutor:
    """Runs one execution request and folds its event stream into a result."""

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        bus: EventBus | None = None,
        connect_timeout: float = 30.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._bus = bus
        self._timeout = httpx.Timeout(connect_timeout, read=None)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(headers=headers)

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}{EXECUTE_ENDPOINT}"

    async def execute(
        self,
        document: Mapping[str, Any],
        prompt: str,
        model: ModelRef,
        plan: PlanResult | MutationPlan | Mapping[str, Any],
        *,
        cancel_token: CancelToken | None = None,
        board: JobBoard | None = None,
    ) -> ExecutionResult:
        """Execute ``plan`` against ``document`` and return the candidate.

        Raises:
            ExecutionCancelled: ``cancel_token`` fired; unfinished jobs are
                forced to ``error("cancelled")``.
            ExecutionError: HTTP failure, transport drop, an ``error`` event,
                an unsuccessful ``result`` or a stream without ``result``.
        """

        board = board if board is not None else JobBoard(bus=self._bus)
        payload = {
            "data": {ROOT_KEY: deepcopy(dict(document))},
            "prompt": prompt,
            "model": model.to_dict(),
            "plannerOutput": _planner_output(plan),
            "mode": EXECUTION_MODE,
        }
        started = time.perf_counter()
        LOGGER.info("Executing plan for '%s' with %s", prompt[:80], model.id)
        try:
            if cancel_token is not None and cancel_token.cancelled:
                raise _StreamCancelled()
            result_event = await self._run(payload, board, cancel_token)
        except _StreamCancelled:
            cancelled = board.cancel_unfinished(CANCELLED)
            reason = cancel_token.reason if cancel_token is not None else CANCELLED
            LOGGER.info("Execution cancelled (%s); %d job(s) marked cancelled", reason, cancelled)
            raise ExecutionCancelled(details={"reason": reason}, jobs=board.jobs(), reason=reason or CANCELLED) from None
        except (httpx.HTTPError, httpx.StreamError) as exc:
            LOGGER.warning("Execution stream failed: %s", exc)
            raise ExecutionError(
                category=ErrorCategory.NETWORK,
                message=f"Executor failed: {exc}",
                details={"endpoint": self.endpoint},
                jobs=board.jobs(),
            ) from exc

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return self._build_result(result_event, board, plan, elapsed_ms)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Stream handling
    # ------------------------------------------------------------------
    async def _run(self, payload: Mapping[str, Any], board: JobBoard, token: CancelToken | None) -> StreamEvent:
        request = self._client.build_request("POST", self.endpoint, json=payload, timeout=self._timeout)
        response = await _race(self._client.send(request, stream=True), token)
        try:
            if not response.is_success:
                body = await response.aread()
                text = body.decode("utf-8", errors="replace")[:500]
                raise ExecutionError(
                    message=f"Executor failed ({response.status_code}): {text}",
                    details={"status_code": response.status_code},
                )
            events = iter_events(response.aiter_bytes())
            try:
                while True:
                    event = await _race(_next_event(events), token)
                    if event is None:
                        break
                    terminal = self._dispatch(event, board)
                    if terminal is not None:
                        return terminal
            finally:
                await events.aclose()
        finally:
            await response.aclose()
        raise ExecutionError(message="Execution stream ended without a result", jobs=board.jobs())

    def _dispatch(self, event: StreamEvent, board: JobBoard) -> StreamEvent | None:
        kind = event.type
        if kind == "plan":
            chunks = event.get("chunks")
            board.declare(chunks if isinstance(chunks, list) else [])
        elif kind == "chunk_start":
            board.start(event.get("index"))
        elif kind == "chunk_complete":
            error = event.get("error")
            board.complete(
                event.get("index"),
                bool(event.get("ok")),
                ms=_as_float(event.get("ms")),
                error=str(error) if error is not None else None,
                system_msg=_as_text(event.get("systemMsg")),
                user_msg=_as_text(event.get("userMsg")),
            )
        elif kind == "result":
            return event
        elif kind == "error":
            details = event.get("details")
            raise ExecutionError(
                message=str(event.get("message") or "Stream error"),
                details={"details": details} if details is not None else {},
                jobs=board.jobs(),
            )
        else:
            LOGGER.debug("Ignoring unknown stream event type %r", kind)
        return None

    def _build_result(
        self,
        event: StreamEvent,
        board: JobBoard,
        plan: PlanResult | MutationPlan | Mapping[str, Any],
        elapsed_ms: float,
    ) -> ExecutionResult:
        raw_metadata = event.get("metadata")
        metadata = deepcopy(dict(raw_metadata)) if isinstance(raw_metadata, Mapping) else {}
        if not event.get("success"):
            raise ExecutionError(
                message="Execution failed",
                details={"error": event.get("error"), "metadata": metadata},
                jobs=board.jobs(),
            )
        candidate = unwrap_candidate(event.get("enhancedData"))
        if candidate is None:
            raise ExecutionError(message="Execution result carried no document", jobs=board.jobs())

        if board.declared:
            planned, succeeded, failed, skipped = board.planned, board.succeeded, board.failed, board.skipped
        else:
            planned = _as_int(metadata.get("chunksPlanned"))
            succeeded = _as_int(metadata.get("chunksSucceeded"))
            failed = _as_int(metadata.get("chunksFailed"))
            skipped = _as_int(metadata.get("chunksSkipped"))

        planner_model_id = None
        plan_time_ms = None
        if isinstance(plan, PlanResult):
            planner_model_id = plan.model.id if plan.model is not None else None
            plan_time_ms = plan.plan_time_ms
        total_ms = _as_float(metadata.get("totalTimeMs"))
        summary = RunSummary(
            planner_model_id=planner_model_id,
            plan_time_ms=plan_time_ms,
            executor_total_ms=total_ms if total_ms is not None else round(elapsed_ms, 1),
            chunks_planned=planned,
            chunks_succeeded=succeeded,
            chunks_failed=failed,
            chunks_skipped=skipped,
            jobs=board.jobs(),
            metadata=metadata,
        )
        LOGGER.info(
            "Execution finished: planned=%d ok=%d failed=%d skipped=%d",
            planned,
            succeeded,
            failed,
            skipped,
        )
        return ExecutionResult(document=candidate, summary=summary)


async def _race(awaitable: Awaitable[T], token: CancelToken | None) -> T:
    """Await ``awaitable`` unless ``token`` fires first."""

    if token is None:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        task.cancel()
        waiter.cancel()
        raise
    waiter.cancel()
    if token.cancelled:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise _StreamCancelled()
    return task.result()


async def _next_event(events: AsyncIterator[StreamEvent]) -> StreamEvent | None:
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None


def unwrap_candidate(data: Any) -> dict[str, Any] | None:
    """Return the candidate document from ``enhancedData`` (enveloped or bare)."""

    inner = unwrap_envelope(data)
    if not isinstance(inner, Mapping):
        return None
    return deepcopy(dict(inner))


def _planner_output(plan: PlanResult | MutationPlan | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(plan, PlanResult):
        return plan.planner_output()
    if isinstance(plan, MutationPlan):
        return {"success": True, "plan": plan.to_dict()}
    return deepcopy(dict(plan))


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def _as_text(value: Any) -> str | None:
    return None if value is None else str(value)
