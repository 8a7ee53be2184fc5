"""Dot-path addressing over nested design documents."""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping, MutableSequence, Sequence
from copy import deepcopy
from typing import Any

__all__ = [
    "InvalidPathError",
    "PathConflictError",
    "split_path",
    "join_path",
    "get_path",
    "has_path",
    "set_path",
    "is_prefix",
]

_MISSING = object()


class InvalidPathError(ValueError):
    """Raised when a path string cannot address anything."""


class PathConflictError(ValueError):
    """Raised when a set would overwrite a non-container intermediate value."""

    def __init__(self, path: str, segment: str, found: Any) -> None:
        self.path = path
        self.segment = segment
        self.found_type = type(found).__name__
        super().__init__(
            f"Cannot set '{path}': segment '{segment}' holds a {self.found_type}, not a container"
        )


def split_path(path: str) -> tuple[str, ...]:
    """Return the segments of ``path`` or raise :class:`InvalidPathError`."""

    if not isinstance(path, str):
        raise InvalidPathError(f"Path must be a string, got {type(path).__name__}")
    text = path.strip()
    if not text:
        raise InvalidPathError("Path must not be empty")
    parts = tuple(text.split("."))
    if any(part == "" for part in parts):
        raise InvalidPathError(f"Path '{path}' contains an empty segment")
    return parts


def join_path(*segments: str) -> str:
    return ".".join(segment for segment in segments if segment)


def is_prefix(prefix: str, path: str) -> bool:
    """Return ``True`` when ``path`` equals ``prefix`` or lives beneath it."""

    return path == prefix or path.startswith(prefix + ".")


def _index_for(segment: str, container: Sequence[Any]) -> int | None:
    if not segment.isdigit():
        return None
    index = int(segment)
    if index >= len(container):
        return None
    return index


def _step(current: Any, segment: str) -> Any:
    if isinstance(current, Mapping):
        return current.get(segment, _MISSING)
    if isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
        index = _index_for(segment, current)
        if index is None:
            return _MISSING
        return current[index]
    return _MISSING


def get_path(document: Any, path: str, default: Any = None) -> Any:
    """Resolve ``path`` against ``document``.

    Traversal stops at the first missing segment or non-container value and
    returns ``default``; the document is never modified.
    """

    current = document
    for segment in split_path(path):
        current = _step(current, segment)
        if current is _MISSING:
            return default
    return current


def has_path(document: Any, path: str) -> bool:
    return get_path(document, path, _MISSING) is not _MISSING


def set_path(document: MutableMapping[str, Any], path: str, value: Any, *, copy: bool = True) -> MutableMapping[str, Any]:
    """Assign ``value`` at ``path`` and return the updated document.

    Missing intermediate segments are created as empty dicts. Existing
    intermediates must be containers: a scalar in the way raises
    :class:`PathConflictError` instead of being replaced. Only the leaf is
    ever overwritten. With ``copy=True`` the input document is left intact.
    """

    if not isinstance(document, MutableMapping):
        raise TypeError(f"Document must be a mapping, got {type(document).__name__}")
    segments = split_path(path)
    root = deepcopy(document) if copy else document
    current: Any = root
    for segment in segments[:-1]:
        if isinstance(current, MutableMapping):
            child = current.get(segment, _MISSING)
            if child is _MISSING:
                child = {}
                current[segment] = child
        else:
            index = _index_for(segment, current)
            if index is None:
                raise PathConflictError(path, segment, current)
            child = current[index]
        if not isinstance(child, (MutableMapping, MutableSequence)):
            raise PathConflictError(path, segment, child)
        current = child

    leaf = segments[-1]
    if isinstance(current, MutableMapping):
        current[leaf] = value
    elif isinstance(current, MutableSequence):
        index = _index_for(leaf, current)
        if index is None:
            raise PathConflictError(path, leaf, current)
        current[index] = value
    else:  # pragma: no cover - guarded by the loop above
        raise PathConflictError(path, leaf, current)
    return root
