"""Service layer helpers (events, persistence, settings)."""

from .events import EventBus
from .persistence import FilePersistenceAdapter, HttpPersistenceAdapter, PersistenceAdapter, SaveReceipt
from .settings import Settings, SettingsStore

__all__ = [
    "EventBus",
    "FilePersistenceAdapter",
    "HttpPersistenceAdapter",
    "PersistenceAdapter",
    "SaveReceipt",
    "Settings",
    "SettingsStore",
]
