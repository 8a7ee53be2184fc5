"""Working-copy store for the editable design document."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Mapping, Protocol, runtime_checkable

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..ai.errors import DocumentLoadError, DocumentNotLoadedError, SaveError
from ..services.events import (
    DocumentLoaded,
    DocumentModified,
    DocumentReverted,
    DocumentSaved,
    DocumentSaveFailed,
    EventBus,
)
from ..services.persistence import PersistenceAdapter, SaveReceipt
from .schema import validate_document
from .snapshot import Snapshot, serialize_document

__all__ = ["DocumentSource", "HttpDocumentSource", "DocumentStore", "Updater"]

LOGGER = logging.getLogger(__name__)

Updater = Callable[[dict[str, Any]], "Mapping[str, Any] | None"]


@runtime_checkable
class DocumentSource(Protocol):
    """Anything able to produce a validated design document."""

    async def fetch(self) -> dict[str, Any]:
        ...


class HttpDocumentSource:
    """Fetches the editable document over HTTP.

    Transport errors (including timeouts) are retried with exponential
    backoff; HTTP status, JSON and schema failures are not.
    """

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 8.0,
        max_retries: int = 3,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 6.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(headers=headers)

    @property
    def url(self) -> str:
        return self._url

    async def fetch(self) -> dict[str, Any]:
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.get(self._url, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise DocumentLoadError(
                message=f"Timed out after {self._timeout:.1f}s fetching the design document",
                details={"url": self._url, "reason": "timeout"},
            ) from exc
        except httpx.HTTPError as exc:
            raise DocumentLoadError(
                message=f"Could not reach the design document: {exc}",
                details={"url": self._url, "reason": "transport"},
            ) from exc

        if not response.is_success:
            raise DocumentLoadError(
                message=f"Design document request returned HTTP {response.status_code}",
                details={"url": self._url, "reason": "status"},
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise DocumentLoadError(
                message="Design document response is not valid JSON",
                details={"url": self._url, "reason": "decode"},
                status_code=response.status_code,
            ) from exc
        return validate_document(payload, source=self._url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._max_retries)),
            wait=wait_exponential(multiplier=self._retry_min_seconds, max=self._retry_max_seconds),
            retry=retry_if_exception_type((httpx.TransportError,)),
        )


class DocumentStore:
    """Single owner of the working copy and its saved baseline.

    Every change goes through :meth:`mutate`, which hands the updater a deep
    copy and swaps the result in only when the updater returns normally.
    Readers get deep copies from :meth:`current_document`; nothing outside the
    store ever holds a writable reference to the working copy.
    """

    def __init__(
        self,
        source: DocumentSource,
        persistence: PersistenceAdapter,
        *,
        bus: EventBus | None = None,
        autosave_delay: float = 2.0,
        autosave_enabled: bool = False,
    ) -> None:
        if autosave_delay < 0:
            raise ValueError("autosave_delay must be >= 0")
        self._source = source
        self._persistence = persistence
        self._bus = bus or EventBus()
        self._autosave_delay = autosave_delay
        self._autosave_enabled = autosave_enabled
        self._document: dict[str, Any] | None = None
        self._baseline: Snapshot | None = None
        self._version = 0
        self._save_lock = asyncio.Lock()
        self._autosave_timer: asyncio.Task[None] | None = None
        self._autosave_runs: set[asyncio.Task[None]] = set()
        self._autosave_block = 0
        self.last_saved_at: datetime | None = None
        self.last_receipt: SaveReceipt | None = None
        self.last_autosave_error: SaveError | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def loaded(self) -> bool:
        return self._document is not None

    @property
    def version(self) -> int:
        return self._version

    @property
    def baseline(self) -> Snapshot | None:
        return self._baseline

    @property
    def autosave_enabled(self) -> bool:
        return self._autosave_enabled

    @property
    def autosave_pending(self) -> bool:
        return self._autosave_timer is not None and not self._autosave_timer.done()

    # ------------------------------------------------------------------
    # Load / read
    # ------------------------------------------------------------------
    async def load(self) -> dict[str, Any]:
        """Fetch, validate and install a fresh working copy and baseline.

        A failed load raises :class:`~tokensmith.ai.errors.LoadError` and leaves
        any previously loaded state exactly as it was.
        """

        document = await self._source.fetch()
        self._cancel_autosave_timer()
        self._document = deepcopy(document)
        self._baseline = Snapshot.capture(self._document, label="load")
        self._version += 1
        self.last_autosave_error = None
        LOGGER.info("Design document loaded (version=%s)", self._version)
        self._bus.publish(DocumentLoaded(version=self._version, source=getattr(self._source, "url", "")))
        return deepcopy(self._document)

    def current_document(self) -> dict[str, Any]:
        return deepcopy(self._require_document())

    def is_dirty(self) -> bool:
        document = self._require_document()
        if self._baseline is None:
            return True
        return not self._baseline.matches(document)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def mutate(self, updater: Updater, *, origin: str = "edit") -> int:
        """Apply ``updater`` to a deep copy and install the result.

        The updater may edit its argument in place and return ``None``, or
        return a replacement mapping. If it raises, the working copy is left
        untouched. Returns the new store version.
        """

        working = deepcopy(self._require_document())
        result = updater(working)
        if result is None:
            result = working
        if not isinstance(result, Mapping):
            raise TypeError(f"Updater must return a mapping or None, got {type(result).__name__}")
        self._document = working if result is working else deepcopy(dict(result))
        self._version += 1
        dirty = self.is_dirty()
        LOGGER.debug("Document mutated (version=%s, origin=%s, dirty=%s)", self._version, origin, dirty)
        self._bus.publish(DocumentModified(version=self._version, dirty=dirty, origin=origin))
        if dirty:
            self.request_autosave()
        return self._version

    def revert_to_baseline(self) -> dict[str, Any]:
        self._require_document()
        if self._baseline is None:  # pragma: no cover - baseline is set with the document
            raise DocumentNotLoadedError()
        self._cancel_autosave_timer()
        self._document = self._baseline.restore()
        self._version += 1
        LOGGER.info("Working copy reverted to baseline '%s'", self._baseline.label)
        self._bus.publish(DocumentReverted(version=self._version, reason="baseline"))
        return deepcopy(self._document)

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------
    async def save(self, *, autosave: bool = False) -> SaveReceipt:
        """Persist the working copy and move the baseline on success.

        Raises:
            SaveError: persistence failed; the baseline is unchanged.
        """

        self._require_document()
        self._cancel_autosave_timer()
        async with self._save_lock:
            serialized = serialize_document(self._require_document())
            version = self._version
            try:
                receipt = await self._persistence.save(serialized)
            except SaveError as exc:
                self._bus.publish(DocumentSaveFailed(version=version, error=str(exc), autosave=autosave))
                raise
            except Exception as exc:
                error = SaveError(message=f"Persistence adapter failed: {exc}")
                self._bus.publish(DocumentSaveFailed(version=version, error=str(error), autosave=autosave))
                raise error from exc

            self._baseline = Snapshot.from_serialized(serialized, label="save")
            self.last_saved_at = datetime.now(timezone.utc)
            self.last_receipt = receipt
            LOGGER.info("Design document saved (version=%s, autosave=%s)", version, autosave)
            self._bus.publish(
                DocumentSaved(
                    version=version,
                    backup_file=receipt.backup_file,
                    timestamp=receipt.timestamp,
                    autosave=autosave,
                )
            )
            return receipt

    # ------------------------------------------------------------------
    # Autosave
    # ------------------------------------------------------------------
    def set_autosave(self, enabled: bool) -> None:
        """Toggle autosave. Never triggers a save by itself."""

        self._autosave_enabled = bool(enabled)
        if not self._autosave_enabled:
            self._cancel_autosave_timer()
        LOGGER.debug("Autosave %s", "enabled" if self._autosave_enabled else "disabled")

    @contextmanager
    def autosave_blocked(self) -> Iterator[None]:
        """Suppress autosave scheduling while the block is held.

        Blocks nest. When the outermost block is released, a save is scheduled
        if autosave is enabled and the document is dirty.
        """

        self._autosave_block += 1
        self._cancel_autosave_timer()
        try:
            yield
        finally:
            self._autosave_block = max(0, self._autosave_block - 1)
            if self._autosave_block == 0 and self.loaded and self.is_dirty():
                self.request_autosave()

    def request_autosave(self) -> bool:
        """(Re)arm the trailing autosave timer; returns whether it was armed."""

        if not self._autosave_enabled or self._autosave_block > 0:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("No running event loop; autosave not scheduled")
            return False
        self._cancel_autosave_timer()
        self._autosave_timer = loop.create_task(self._autosave_after_delay())
        return True

    async def _autosave_after_delay(self) -> None:
        await asyncio.sleep(self._autosave_delay)
        current = asyncio.current_task()
        if self._autosave_timer is current:
            self._autosave_timer = None
        if not self._autosave_enabled or self._autosave_block > 0 or not self.loaded or not self.is_dirty():
            return
        run = asyncio.get_running_loop().create_task(self._run_autosave())
        self._autosave_runs.add(run)
        run.add_done_callback(self._autosave_runs.discard)

    async def _run_autosave(self) -> None:
        try:
            await self.save(autosave=True)
        except SaveError as exc:
            self.last_autosave_error = exc
            LOGGER.warning("Autosave failed: %s", exc)
        else:
            self.last_autosave_error = None

    def _cancel_autosave_timer(self) -> None:
        timer = self._autosave_timer
        self._autosave_timer = None
        if timer is not None and not timer.done() and timer is not _current_task():
            timer.cancel()

    async def flush_autosave(self) -> None:
        """Wait for autosave saves already started to finish."""

        if self._autosave_runs:
            await asyncio.gather(*list(self._autosave_runs))

    async def aclose(self) -> None:
        self._cancel_autosave_timer()
        await self.flush_autosave()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require_document(self) -> dict[str, Any]:
        if self._document is None:
            raise DocumentNotLoadedError()
        return self._document


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
