"""Immutable serialized captures of a design document."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

__all__ = ["Snapshot", "canonical_json", "serialize_document"]


def canonical_json(document: Any) -> str:
    """Return the key-order independent serialization used for equality."""

    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def serialize_document(document: Any) -> str:
    """Return the human-readable form sent to persistence."""

    return json.dumps(document, indent=2, ensure_ascii=False)


def _compact(document: Any) -> str:
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False)


@dataclass(slots=True, frozen=True)
class Snapshot:
    """A document frozen at one moment.

    ``payload`` keeps the original key order so :meth:`restore` reproduces the
    document exactly; ``canonical`` is the sorted form used by the dirty
    check. Snapshots are never mutated and ``restore`` always returns a fresh
    object.
    """

    label: str
    payload: str
    canonical: str
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def capture(cls, document: Mapping[str, Any], *, label: str = "snapshot") -> Snapshot:
        return cls(label=label, payload=_compact(document), canonical=canonical_json(document))

    @classmethod
    def from_serialized(cls, text: str, *, label: str = "snapshot") -> Snapshot:
        """Build a snapshot from an already serialized document."""

        return cls.capture(json.loads(text), label=label)

    def restore(self) -> dict[str, Any]:
        return json.loads(self.payload)

    def matches(self, document: Mapping[str, Any]) -> bool:
        return canonical_json(document) == self.canonical

    @property
    def digest(self) -> str:
        return hashlib.sha1(self.canonical.encode("utf-8")).hexdigest()
