"""Core document addressing helpers."""

from .paths import (
    InvalidPathError,
    PathConflictError,
    get_path,
    has_path,
    is_prefix,
    join_path,
    set_path,
    split_path,
)

__all__ = [
    "InvalidPathError",
    "PathConflictError",
    "get_path",
    "has_path",
    "is_prefix",
    "join_path",
    "set_path",
    "split_path",
]
