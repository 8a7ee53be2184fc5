"""Two-stage enhance workflow: plan, review, execute, review, apply.

:class:`EnhanceSession` wires the scope index, planner, executor and preview
controller into one state machine so a host only has to forward user
actions. Only one pipeline can be in flight at a time.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Any

from ..documents.store import DocumentStore
from ..services.events import EventBus, SessionStateChanged
from .errors import EngineError, ErrorCategory, PipelineBusyError, PreviewStateError
from .executor import CancelToken, ExecutionResult, RunSummary, StreamingExecutor
from .jobs import Job, JobBoard
from .planner import DEFAULT_PLANNER_MODEL, SCOPE_MODES, ModelRef, PlanClient, PlanResult
from .preview import PreviewController, PreviewState
from .scope_index import DEFAULT_MAX_ENTRIES, build_scope_index, build_shape_hints

__all__ = ["SessionState", "RunArgs", "EnhanceSession"]

LOGGER = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    PLANNING = "planning"
    PLAN_READY = "plan_ready"
    EXECUTING = "executing"
    RESULTS_READY = "results_ready"
    APPLIED = "applied"
    ERROR = "error"


_BUSY_STATES = frozenset({SessionState.PLANNING, SessionState.EXECUTING})


@dataclass(slots=True, frozen=True)
class RunArgs:
    """Arguments of the last run, replayed by :meth:`EnhanceSession.retry`."""

    prompt: str
    selection_hint: Any = None
    scope_mode: str = "auto"
    planner_model: ModelRef | None = None
    executor_model: ModelRef | None = None
    execute: bool = False


def _check_run_args(prompt: str, scope_mode: str) -> None:
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValueError("prompt must be a non-empty string")
    if scope_mode not in SCOPE_MODES:
        raise ValueError(f"scope_mode must be one of {SCOPE_MODES}, got {scope_mode!r}")


class EnhanceSession:
    def __init__(
        self,
        store: DocumentStore,
        planner: PlanClient,
        executor: StreamingExecutor,
        preview: PreviewController,
        *,
        bus: EventBus | None = None,
        planner_model: ModelRef | None = None,
        executor_model: ModelRef | None = None,
        scope_index_limit: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        self._store = store
        self._planner = planner
        self._executor = executor
        self._preview = preview
        self._bus = bus or store.bus
        self.planner_model = planner_model or DEFAULT_PLANNER_MODEL
        self.executor_model = executor_model or self.planner_model
        self._scope_index_limit = scope_index_limit
        self._state = SessionState.IDLE
        self._plan: PlanResult | None = None
        self._board: JobBoard | None = None
        self._result: ExecutionResult | None = None
        self._last_run: RunSummary | None = None
        self._error: EngineError | None = None
        self._last_args: RunArgs | None = None
        self._cancel_token: CancelToken | None = None

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state in _BUSY_STATES

    @property
    def plan(self) -> PlanResult | None:
        return self._plan

    @property
    def jobs(self) -> tuple[Job, ...]:
        return self._board.jobs() if self._board is not None else ()

    @property
    def result(self) -> ExecutionResult | None:
        return self._result

    @property
    def last_run(self) -> RunSummary | None:
        return self._last_run

    @property
    def error(self) -> EngineError | None:
        return self._error

    @property
    def last_args(self) -> RunArgs | None:
        return self._last_args

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def run_planner(
        self,
        prompt: str,
        *,
        selection_hint: Any = None,
        scope_mode: str = "auto",
        model: ModelRef | None = None,
    ) -> PlanResult:
        """Build the scope index from the working copy and request a plan."""

        self._ensure_idle_for_run()
        _check_run_args(prompt, scope_mode)
        self._last_args = RunArgs(
            prompt=prompt,
            selection_hint=selection_hint,
            scope_mode=scope_mode,
            planner_model=model,
        )
        return await self._run_planner(prompt, selection_hint, scope_mode, model)

    async def _run_planner(
        self,
        prompt: str,
        selection_hint: Any,
        scope_mode: str,
        model: ModelRef | None,
    ) -> PlanResult:
        self._error = None
        self._result = None
        self._plan = None
        document = self._store.current_document()
        index = build_scope_index(document, max_entries=self._scope_index_limit)
        hints = build_shape_hints(document, index)
        self._transition(SessionState.PLANNING)
        try:
            plan = await self._planner.plan(
                prompt,
                index,
                selection_hint=selection_hint,
                scope_mode=scope_mode,
                model=model or self.planner_model,
                shape_hints=hints,
            )
        except EngineError as exc:
            self._fail(exc)
            raise
        except BaseException:
            self._abandon(SessionState.IDLE)
            raise
        self._plan = plan
        self._transition(SessionState.PLAN_READY)
        return plan

    async def run_executor(
        self,
        *,
        model: ModelRef | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ExecutionResult:
        """Execute the reviewed plan against the current working copy."""

        if self.busy:
            raise PipelineBusyError(state=self._state.value)
        if self._state is not SessionState.PLAN_READY or self._plan is None or self._last_args is None:
            raise EngineError(
                category=ErrorCategory.VALIDATION,
                message="No plan available for execution",
                details={"state": self._state.value},
            )
        self._last_args = replace(self._last_args, executor_model=model, execute=True)
        token = cancel_token or CancelToken()
        board = JobBoard(bus=self._bus)
        self._board = board
        self._cancel_token = token
        self._transition(SessionState.EXECUTING)
        try:
            result = await self._executor.execute(
                self._store.current_document(),
                self._last_args.prompt,
                model or self.executor_model,
                self._plan,
                cancel_token=token,
                board=board,
            )
        except EngineError as exc:
            self._fail(exc)
            raise
        except BaseException:
            # The plan is still valid; the caller may execute it again.
            self._board = None
            self._abandon(SessionState.PLAN_READY)
            raise
        finally:
            self._cancel_token = None
        self._result = result
        self._last_run = result.summary
        self._transition(SessionState.RESULTS_READY)
        return result

    async def run_plan_and_execute(
        self,
        prompt: str,
        *,
        selection_hint: Any = None,
        scope_mode: str = "auto",
        planner_model: ModelRef | None = None,
        executor_model: ModelRef | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ExecutionResult:
        """Plan and immediately execute without a manual review step."""

        self._ensure_idle_for_run()
        _check_run_args(prompt, scope_mode)
        self._last_args = RunArgs(
            prompt=prompt,
            selection_hint=selection_hint,
            scope_mode=scope_mode,
            planner_model=planner_model,
            executor_model=executor_model,
            execute=True,
        )
        await self._run_planner(prompt, selection_hint, scope_mode, planner_model)
        return await self.run_executor(model=executor_model, cancel_token=cancel_token)

    async def retry(self) -> PlanResult | ExecutionResult | None:
        """Re-run the last arguments when the last error is retryable.

        Returns ``None`` (and does nothing) otherwise.
        """

        error, args = self._error, self._last_args
        if error is None or not error.retryable or args is None:
            return None
        LOGGER.info("Retrying last run after %s error", error.category)
        self._error = None
        self._transition(SessionState.IDLE)
        if args.execute:
            return await self.run_plan_and_execute(
                args.prompt,
                selection_hint=args.selection_hint,
                scope_mode=args.scope_mode,
                planner_model=args.planner_model,
                executor_model=args.executor_model,
            )
        return await self.run_planner(
            args.prompt,
            selection_hint=args.selection_hint,
            scope_mode=args.scope_mode,
            model=args.planner_model,
        )

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel an in-flight execution; returns whether one was running."""

        token = self._cancel_token
        if token is None:
            return False
        token.cancel(reason)
        return True

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------
    def apply_preview(self) -> None:
        if self._state is not SessionState.RESULTS_READY or self._result is None:
            raise PreviewStateError(message="No results to preview", state=self._state.value)
        self._preview.apply_preview(self._result.document)
        self._transition(SessionState.APPLIED)

    def reject_preview(self) -> None:
        if self._state is not SessionState.APPLIED:
            raise PreviewStateError(message="No applied preview to reject", state=self._state.value)
        self._preview.reject()
        self._result = None
        self._transition(SessionState.IDLE)

    def accept_preview(self) -> None:
        if self._state is not SessionState.APPLIED:
            raise PreviewStateError(message="No applied preview to accept", state=self._state.value)
        self._preview.accept()
        self._result = None
        self._transition(SessionState.IDLE)

    def discard_results(self) -> None:
        if self._state is not SessionState.RESULTS_READY:
            raise PreviewStateError(message="No results to discard", state=self._state.value)
        self._result = None
        self._transition(SessionState.IDLE)

    def reset(self) -> None:
        """Return to ``idle``, cancelling any run and rolling back any preview."""

        self.cancel("reset")
        if self._preview.state is PreviewState.PREVIEWING:
            self._preview.reject()
        self._plan = None
        self._board = None
        self._result = None
        self._error = None
        self._last_args = None
        self._transition(SessionState.IDLE)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ensure_idle_for_run(self) -> None:
        if self.busy:
            raise PipelineBusyError(state=self._state.value)
        if self._state is SessionState.APPLIED:
            raise PreviewStateError(
                message="Accept or reject the pending preview before starting a new run",
                state=self._state.value,
            )

    def _fail(self, exc: EngineError) -> None:
        self._error = exc
        LOGGER.warning("Enhance run failed: %s", exc)
        self._transition(SessionState.ERROR, error=exc.to_dict())

    def _abandon(self, state: SessionState) -> None:
        LOGGER.info("Enhance run abandoned during %s", self._state.value)
        self._transition(state)

    def _transition(self, state: SessionState, *, error: dict[str, Any] | None = None) -> None:
        previous = self._state
        self._state = state
        if previous is not state or error is not None:
            self._bus.publish(SessionStateChanged(previous=previous.value, current=state.value, error=error))
