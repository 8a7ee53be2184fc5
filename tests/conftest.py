"""Shared pytest fixtures."""

from __future__ import annotations

import asyncio
import json
import logging
from copy import deepcopy
from typing import Any, Callable

import httpx
import pytest

from tokensmith.ai.errors import SaveError
from tokensmith.documents.schema import validate_document
from tokensmith.documents.store import DocumentStore
from tokensmith.services.events import EventBus
from tokensmith.services.persistence import SaveReceipt
from tokensmith.utils import logging as logging_utils


SAMPLE_DESIGN: dict[str, Any] = {
    "tokens": {
        "colors": {"primary": "#1e3a8a", "background": "#ffffff", "text": "#0f172a"},
        "typography": {
            "heading": {"fontFamily": "Montserrat", "fontSize": "2rem", "color": "#0f172a"},
            "body": {"fontFamily": "Inter", "fontSize": "1rem", "color": "#334155"},
        },
    },
    "components": {
        "button": {
            "variants": {
                "primary": {"backgroundColor": "#1e3a8a", "textColor": "#ffffff", "padding": "12px 24px"},
                "secondary": {"backgroundColor": "transparent", "textColor": "#1e3a8a", "borderColor": "#1e3a8a"},
            }
        }
    },
    "sections": {
        "hero": {
            "layout": {
                "padding": {"mobile": "2rem", "tablet": "3rem", "desktop": "4rem"},
                "inner": {"background": {"type": "color", "value": "#f8fafc"}},
            }
        },
        "cards": {
            "layout": {
                "padding": {"mobile": "1rem", "tablet": "2rem", "desktop": "3rem"},
                "inner": {"background": {"type": "color", "value": "#ffffff"}},
            }
        },
    },
}


class FakeSource:
    """Document source returning queued payloads or raising queued errors."""

    url = "memory://design"

    def __init__(self, *payloads: Any) -> None:
        self._payloads = list(payloads)
        self._last: Any = None
        self.calls = 0

    def push(self, payload: Any) -> None:
        self._payloads.append(payload)

    async def fetch(self) -> dict[str, Any]:
        self.calls += 1
        if self._payloads:
            self._last = self._payloads.pop(0)
        payload = self._last
        if isinstance(payload, BaseException):
            raise payload
        return validate_document(deepcopy(payload), source=self.url)


class RecordingPersistence:
    """Persistence adapter that records every serialized document."""

    def __init__(self, *, delay: float = 0.0) -> None:
        self.saved: list[str] = []
        self.failures: list[BaseException] = []
        self.delay = delay

    def fail_next(self, error: BaseException | None = None) -> None:
        self.failures.append(error or SaveError(message="disk full"))

    @property
    def last_document(self) -> dict[str, Any] | None:
        return json.loads(self.saved[-1]) if self.saved else None

    async def save(self, serialized: str) -> SaveReceipt:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        self.saved.append(serialized)
        return SaveReceipt(backup_file=f"design_backup_{len(self.saved)}.json", timestamp=f"t{len(self.saved)}")


class EventRecorder:
    """Collects published events of the given types, in order."""

    def __init__(self, bus: EventBus, *event_types: type) -> None:
        self.events: list[Any] = []
        for event_type in event_types:
            bus.subscribe(event_type, self.record)

    def record(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture
def sample_design() -> dict[str, Any]:
    return deepcopy(SAMPLE_DESIGN)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def persistence() -> RecordingPersistence:
    return RecordingPersistence()


@pytest.fixture
def source(sample_design: dict[str, Any]) -> FakeSource:
    return FakeSource(sample_design)


@pytest.fixture
def store(source: FakeSource, persistence: RecordingPersistence, bus: EventBus) -> DocumentStore:
    return DocumentStore(source, persistence, bus=bus, autosave_delay=0.05)


@pytest.fixture
def recorder_factory() -> Callable[..., EventRecorder]:
    recorders: list[EventRecorder] = []

    def _factory(bus: EventBus, *event_types: type) -> EventRecorder:
        recorder = EventRecorder(bus, *event_types)
        recorders.append(recorder)
        return recorder

    return _factory


@pytest.fixture
def mock_client_factory() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build ``httpx.AsyncClient`` instances backed by a handler function."""

    def _factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _factory


@pytest.fixture
def restore_logging(monkeypatch: pytest.MonkeyPatch):
    """Undo handler and level changes made by ``setup_logging``."""

    def _tracked() -> dict[str, logging.Logger]:
        loggers = {name: logging.getLogger(name) for name in ("asyncio", "httpx", "httpcore")}
        for name, candidate in logging.root.manager.loggerDict.items():
            if name.startswith(logging_utils.ENGINE_LOGGER) and isinstance(candidate, logging.Logger):
                loggers[name] = candidate
        return loggers

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    levels = {name: logger.level for name, logger in _tracked().items()}
    monkeypatch.setattr(logging_utils, "_CONFIGURED", False)
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, logger in _tracked().items():
        logger.setLevel(levels.get(name, logging.NOTSET))
    logging.captureWarnings(False)
