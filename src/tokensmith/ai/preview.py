"""Speculative preview of AI results with exact rollback.

A preview swaps the candidate into the working copy so the page renders it,
while a backup snapshot of the previous state is held aside and autosave is
blocked. Rejecting restores the backup byte-for-byte; accepting keeps the
candidate and lets autosave resume.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from contextlib import ExitStack
from copy import deepcopy
from typing import Any

from ..documents.snapshot import Snapshot
from ..documents.store import DocumentStore
from ..services.events import DocumentSaved, EventBus, PreviewStateChanged
from .errors import PreviewStateError

__all__ = ["PreviewState", "PreviewController"]

LOGGER = logging.getLogger(__name__)


class PreviewState(str, enum.Enum):
    CLEAN = "clean"
    PREVIEWING = "previewing"
    COMMITTED = "committed"
    SAVED = "saved"


class PreviewController:
    """Drives ``CLEAN -> PREVIEWING -> COMMITTED|CLEAN`` and ``COMMITTED -> SAVED``."""

    def __init__(self, store: DocumentStore, *, bus: EventBus | None = None) -> None:
        self._store = store
        self._bus = bus or store.bus
        self._state = PreviewState.CLEAN
        self._backup: Snapshot | None = None
        self._candidate: dict[str, Any] | None = None
        self._block: ExitStack | None = None
        self.last_outcome: str | None = None
        self._bus.subscribe(DocumentSaved, self._on_document_saved)

    @property
    def state(self) -> PreviewState:
        return self._state

    @property
    def backup(self) -> Snapshot | None:
        return self._backup

    @property
    def has_candidate(self) -> bool:
        return self._candidate is not None

    @property
    def candidate(self) -> dict[str, Any] | None:
        return deepcopy(self._candidate) if self._candidate is not None else None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def apply_preview(self, candidate: Mapping[str, Any]) -> None:
        """Show ``candidate`` in the working copy, keeping a backup for rollback."""

        if self._state is PreviewState.PREVIEWING:
            raise PreviewStateError(message="A preview is already pending", state=self._state.value)
        if not isinstance(candidate, Mapping):
            raise TypeError(f"Preview candidate must be a mapping, got {type(candidate).__name__}")

        cached = deepcopy(dict(candidate))
        backup = Snapshot.capture(self._store.current_document(), label="preview-backup")
        block = ExitStack()
        block.enter_context(self._store.autosave_blocked())
        try:
            self._store.mutate(lambda _current: deepcopy(cached), origin="preview")
        except BaseException:
            block.close()
            raise
        self._backup = backup
        self._block = block
        self._candidate = cached
        self.last_outcome = None
        LOGGER.info("Preview applied (backup digest %s)", backup.digest[:12])
        self._transition(PreviewState.PREVIEWING)

    def reject(self) -> None:
        """Restore the exact pre-preview document."""

        if self._state is not PreviewState.PREVIEWING or self._backup is None:
            raise PreviewStateError(message="No preview to reject", state=self._state.value)
        backup = self._backup
        self._store.mutate(lambda _current: backup.restore(), origin="revert")
        self._backup = None
        self._release_block()
        self.last_outcome = "reverted"
        LOGGER.info("Preview rejected; working copy restored")
        self._transition(PreviewState.CLEAN, outcome="reverted")

    def accept(self) -> None:
        """Keep the previewed candidate. Saving is left to the store."""

        if self._state is not PreviewState.PREVIEWING:
            raise PreviewStateError(message="No preview to accept", state=self._state.value)
        self._backup = None
        self._release_block()
        self.last_outcome = "committed"
        LOGGER.info("Preview committed into the working copy")
        self._transition(PreviewState.COMMITTED, outcome="committed")

    def reapply(self) -> None:
        """Preview the cached candidate again without re-running the pipeline."""

        if self._candidate is None:
            raise PreviewStateError(message="No cached result to re-apply", state=self._state.value)
        self.apply_preview(self._candidate)

    def discard_candidate(self) -> None:
        self._candidate = None

    def close(self) -> None:
        """Drop the save subscription; rejects a pending preview first."""

        if self._state is PreviewState.PREVIEWING:
            self.reject()
        self._bus.unsubscribe(DocumentSaved, self._on_document_saved)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _on_document_saved(self, event: DocumentSaved) -> None:
        if self._state is PreviewState.COMMITTED:
            self._transition(PreviewState.SAVED, outcome="saved")

    def _release_block(self) -> None:
        block, self._block = self._block, None
        if block is not None:
            block.close()

    def _transition(self, state: PreviewState, *, outcome: str | None = None) -> None:
        previous = self._state
        self._state = state
        self._bus.publish(PreviewStateChanged(previous=previous.value, current=state.value, outcome=outcome))
