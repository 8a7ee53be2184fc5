"""Bootstrap helpers for hosts embedding the tokensmith engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import httpx

from .ai.executor import StreamingExecutor
from .ai.planner import ModelRef, PlanClient
from .ai.preview import PreviewController
from .ai.session import EnhanceSession
from .documents.store import DocumentStore, HttpDocumentSource
from .documents.tokens import DesignTokensAdapter, TokenResolver
from .services.events import EventBus
from .services.persistence import FilePersistenceAdapter, HttpPersistenceAdapter, PersistenceAdapter
from .services.settings import Settings, SettingsStore
from .utils import logging as logging_utils

__all__ = ["EditorRuntime", "build_runtime", "configure_logging", "load_settings"]

_LOGGER = logging.getLogger(__name__)
_FILE_SCHEME = "file://"


def configure_logging(settings: Settings | None = None, *, debug: bool = False, force: bool = False) -> Path:
    """Configure logging for the engine and return the log file path."""

    debug = debug or bool(settings and settings.debug_logging)
    level = logging.DEBUG if debug else logging.INFO
    settings = settings or Settings()
    path = logging_utils.setup_logging(
        level,
        log_dir=settings.log_dir,
        component_levels=settings.log_levels,
        trace_stream=settings.trace_stream,
        force=force,
    )
    _LOGGER.debug("Logging configured (level=%s, file=%s)", logging.getLevelName(level), path)
    return path


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


@dataclass(slots=True)
class EditorRuntime:
    """Every long-lived engine object, wired to one bus and one HTTP client."""

    settings: Settings
    bus: EventBus
    client: httpx.AsyncClient
    store: DocumentStore
    planner: PlanClient
    executor: StreamingExecutor
    preview: PreviewController
    session: EnhanceSession
    tokens: DesignTokensAdapter
    resolver: TokenResolver
    owns_client: bool = True

    async def start(self) -> None:
        """Load the editable document and the display tokens."""

        self.resolver.update(await self.tokens.fetch())
        await self.store.load()
        _LOGGER.info(
            "Runtime started (document version %s, tokens from %s)",
            self.store.version,
            self.tokens.last_source,
        )

    async def aclose(self) -> None:
        self.session.reset()
        self.preview.close()
        await self.store.aclose()
        if self.owns_client:
            await self.client.aclose()


def _model(settings: Settings, model_id: str, name: str) -> ModelRef:
    return ModelRef(provider=settings.model_provider, id=model_id, name=name)


def _build_persistence(settings: Settings, client: httpx.AsyncClient) -> PersistenceAdapter:
    url = settings.persistence_url
    if url.startswith(_FILE_SCHEME):
        return FilePersistenceAdapter(Path(url[len(_FILE_SCHEME) :]), keep_backups=settings.keep_backups)
    return HttpPersistenceAdapter(url, client=client)


def build_runtime(
    settings: Settings | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    persistence: PersistenceAdapter | None = None,
) -> EditorRuntime:
    """Create the engine objects described by ``settings``.

    A ``file://`` ``persistence_url`` selects the local file adapter. Pass
    ``client`` to share (and keep ownership of) an existing HTTP client.
    """

    settings = settings or Settings()
    owns_client = client is None
    http = client or httpx.AsyncClient(headers=dict(settings.default_headers))
    bus = EventBus()

    source = HttpDocumentSource(
        settings.document_url,
        client=http,
        timeout=settings.load_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
    )
    store = DocumentStore(
        source,
        persistence or _build_persistence(settings, http),
        bus=bus,
        autosave_delay=settings.autosave_delay,
        autosave_enabled=settings.autosave_enabled,
    )
    planner_model = _model(settings, settings.planner_model, settings.planner_model_name)
    executor_model = _model(settings, settings.executor_model, settings.executor_model_name)
    planner = PlanClient(
        settings.ai_base_url,
        client=http,
        timeout=settings.plan_timeout,
        default_model=planner_model,
    )
    executor = StreamingExecutor(settings.ai_base_url, client=http, bus=bus)
    preview = PreviewController(store, bus=bus)
    session = EnhanceSession(
        store,
        planner,
        executor,
        preview,
        bus=bus,
        planner_model=planner_model,
        executor_model=executor_model,
        scope_index_limit=settings.scope_index_limit,
    )
    tokens = DesignTokensAdapter(settings.tokens_url, client=http, timeout=settings.load_timeout)
    return EditorRuntime(
        settings=settings,
        bus=bus,
        client=http,
        store=store,
        planner=planner,
        executor=executor,
        preview=preview,
        session=session,
        tokens=tokens,
        resolver=TokenResolver(),
        owns_client=owns_client,
    )
