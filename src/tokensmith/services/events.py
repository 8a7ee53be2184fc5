"""Typed publish/subscribe bus connecting the store, preview and session layers.

Components announce state changes here instead of holding references to
each other. The bus is synchronous: handlers run inside ``publish`` on the
event loop thread.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar
from weakref import WeakMethod

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all bus events.

    Subclasses are ``@dataclass(slots=True)`` records carrying only plain
    values so handlers can never alias engine state.
    """


# Job transitions can fire many times per second during a run.
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Document Events
# =============================================================================


@dataclass(slots=True)
class DocumentLoaded(Event):
    """Emitted after a successful load replaced the working copy and baseline."""

    version: int
    source: str = ""


@dataclass(slots=True)
class DocumentModified(Event):
    """Emitted after every successful ``mutate``.

    Attributes:
        version: Store version after the mutation.
        dirty: Whether the working copy now differs from the baseline.
        origin: Free-form label of who mutated (``"edit"``, ``"preview"``...).
    """

    version: int
    dirty: bool
    origin: str = "edit"


@dataclass(slots=True)
class DocumentSaved(Event):
    """Emitted once the persistence adapter confirmed a write."""

    version: int
    backup_file: str | None = None
    timestamp: str | None = None
    autosave: bool = False


@dataclass(slots=True)
class DocumentSaveFailed(Event):
    """Emitted when a save attempt failed; the baseline did not move."""

    version: int
    error: str
    autosave: bool = False


@dataclass(slots=True)
class DocumentReverted(Event):
    """Emitted when the working copy was restored from a snapshot."""

    version: int
    reason: str = "baseline"


# =============================================================================
# AI Pipeline Events
# =============================================================================


@dataclass(slots=True)
class JobStateChanged(Event):
    """Emitted when a chunk job moves to a new status."""

    index: int
    path: str
    status: str
    ms: float | None = None
    error: str | None = None


_QUIET_EVENT_TYPES.add(JobStateChanged)


@dataclass(slots=True)
class PreviewStateChanged(Event):
    previous: str
    current: str
    outcome: str | None = None


@dataclass(slots=True)
class SessionStateChanged(Event):
    previous: str
    current: str
    error: dict[str, Any] | None = None


class EventBus(Generic[E]):
    """Publish/subscribe hub keyed by exact event class.

    Bound-method handlers are held through :class:`weakref.WeakMethod` so a
    discarded controller silently drops out; plain functions and lambdas are
    held strongly.

    Not thread-safe: call it from the event loop thread only.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for ``event_type``; duplicates are kept."""

        self._handlers[event_type].append(_HandlerRef.create(handler))
        LOGGER.debug("Subscribed %s to %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""

        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for position, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(position)
                LOGGER.debug("Unsubscribed %s from %s", _handler_name(handler), event_type.__name__)
                return

    def publish(self, event: E) -> None:
        """Deliver ``event`` to its handlers in registration order.

        A failing handler is logged and does not stop delivery to the rest.
        """

        event_type = type(event)
        handlers = self._handlers.get(event_type)
        quiet = event_type in _QUIET_EVENT_TYPES
        if not handlers:
            return
        if not quiet:
            LOGGER.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead: list[int] = []
        for position, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead.append(position)
                continue
            try:
                handler(event)
            except Exception:
                LOGGER.exception(
                    "Handler %s raised while handling %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
        for position in reversed(dead):
            handlers.pop(position)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the handler count for ``event_type`` or across all types."""

        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Strong or weak reference to a handler."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, target: Any, is_weak: bool) -> None:
        self._ref = target
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref
        return self._ref()

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "DocumentLoaded",
    "DocumentModified",
    "DocumentSaved",
    "DocumentSaveFailed",
    "DocumentReverted",
    "JobStateChanged",
    "PreviewStateChanged",
    "SessionStateChanged",
]
