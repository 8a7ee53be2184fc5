"""Catalog of document subtrees the AI pipeline may target.

The index is a pure projection of the current document. It is rebuilt for
every request and never stored. Paths are rooted at :data:`ROOT_KEY`, the
same envelope key the execution request wraps the document in.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any

from ..core.paths import get_path, is_prefix, join_path

__all__ = [
    "ROOT_KEY",
    "ScopeIndexEntry",
    "ScopeIndex",
    "build_scope_index",
    "build_shape_hints",
    "strip_root",
]

LOGGER = logging.getLogger(__name__)

ROOT_KEY = "designV2"
INDEX_VERSION = 2
DEFAULT_MAX_ENTRIES = 200

_ALIAS_KEYS: tuple[str, ...] = (
    "cards background",
    "section background",
    "hero background",
    "background",
    "button background",
    "button color",
    "primary button",
    "secondary button",
    "button",
    "text color",
    "heading color",
    "body text",
    "title color",
    "padding",
    "spacing",
    "hero section",
    "cards section",
)

_RELATIONSHIPS: Mapping[str, Mapping[str, list[str]]] = {
    "background_affects_text": {
        f"{ROOT_KEY}.sections.*.layout.inner.background": [f"{ROOT_KEY}.tokens.typography.*.color"],
        f"{ROOT_KEY}.tokens.colors.background": [f"{ROOT_KEY}.tokens.typography.body.color"],
    },
    "button_variants": {
        f"{ROOT_KEY}.components.button.variants.primary": ["backgroundColor", "textColor", "padding"],
        f"{ROOT_KEY}.components.button.variants.secondary": ["backgroundColor", "textColor", "borderColor"],
    },
}


@dataclass(slots=True, frozen=True)
class ScopeIndexEntry:
    id: str
    path: str
    category: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "path": self.path, "category": self.category}


@dataclass(slots=True, frozen=True)
class ScopeIndex:
    """Mutation-eligible paths plus the semantic hints sent to the planner."""

    entries: tuple[ScopeIndexEntry, ...] = ()
    aliases: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    relationships: Mapping[str, Any] = field(default_factory=dict)
    version: int = INDEX_VERSION
    truncated: bool = False

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(entry.path for entry in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def find(self, entry_id: str) -> ScopeIndexEntry | None:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    def covers(self, path: str) -> bool:
        """Return ``True`` when ``path`` is an indexed path or nested under one."""

        if not isinstance(path, str) or not path:
            return False
        return any(is_prefix(entry.path, path) for entry in self.entries)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "paths": [entry.to_dict() for entry in self.entries],
            "aliases": {name: list(paths) for name, paths in self.aliases.items()},
            "relationships": deepcopy(dict(self.relationships)),
        }


def strip_root(path: str) -> str:
    """Return ``path`` relative to the document (without the envelope key)."""

    prefix = ROOT_KEY + "."
    return path[len(prefix):] if path.startswith(prefix) else path


def _mapping_keys(value: Any) -> list[str]:
    if isinstance(value, Mapping):
        return [str(key) for key in value.keys()]
    return []


def build_scope_index(document: Mapping[str, Any] | None, *, max_entries: int = DEFAULT_MAX_ENTRIES) -> ScopeIndex:
    """Enumerate color tokens, typography groups, button variants and section layouts.

    Entries follow document order. Past ``max_entries`` the index is cut and
    flagged as truncated; aliases only reference kept entries.
    """

    if max_entries <= 0:
        raise ValueError("max_entries must be positive")
    if not isinstance(document, Mapping):
        return ScopeIndex(aliases={name: () for name in _ALIAS_KEYS}, relationships=deepcopy(dict(_RELATIONSHIPS)))

    entries: list[ScopeIndexEntry] = []
    aliases: dict[str, list[str]] = {name: [] for name in _ALIAS_KEYS}
    truncated = False

    def add(entry_id: str, category: str) -> str | None:
        nonlocal truncated
        if len(entries) >= max_entries:
            truncated = True
            return None
        path = join_path(ROOT_KEY, entry_id)
        entries.append(ScopeIndexEntry(id=entry_id, path=path, category=category))
        return path

    tokens = document.get("tokens")
    if isinstance(tokens, Mapping) and tokens.get("colors"):
        path = add("tokens.colors", "color")
        if path:
            aliases["background"].append(path)

    for name in _mapping_keys(get_path(document, "tokens.typography")):
        path = add(f"tokens.typography.{name}", "typography")
        if not path:
            break
        if "heading" in name or "title" in name:
            aliases["heading color"].append(path)
            aliases["title color"].append(path)
        if "body" in name or "text" in name:
            aliases["body text"].append(path)
            aliases["text color"].append(path)

    for variant in _mapping_keys(get_path(document, "components.button.variants")):
        path = add(f"components.button.variants.{variant}", "component")
        if not path:
            break
        aliases["button"].append(path)
        aliases["button background"].append(path)
        aliases["button color"].append(path)
        if variant == "primary":
            aliases["primary button"].append(path)
        elif variant == "secondary":
            aliases["secondary button"].append(path)

    for section in _mapping_keys(document.get("sections")):
        path = add(f"sections.{section}.layout", "layout")
        if not path:
            break
        background = f"{path}.inner.background"
        aliases["section background"].append(background)
        aliases["background"].append(background)
        aliases["padding"].append(f"{path}.padding")
        aliases["spacing"].append(f"{path}.padding")
        if "hero" in section:
            aliases["hero section"].append(path)
            aliases["hero background"].append(background)
        if "card" in section or "feature" in section:
            aliases["cards background"].append(background)
            aliases["cards section"].append(path)

    if truncated:
        LOGGER.warning("Scope index truncated at %d entries", max_entries)
    return ScopeIndex(
        entries=tuple(entries),
        aliases={name: tuple(paths) for name, paths in aliases.items()},
        relationships=deepcopy(dict(_RELATIONSHIPS)),
        truncated=truncated,
    )


def build_shape_hints(document: Mapping[str, Any] | None, index: ScopeIndex) -> dict[str, list[str]]:
    """Map each indexed object path to its child keys."""

    hints: dict[str, list[str]] = {}
    wrapped = {ROOT_KEY: document}
    for entry in index.entries:
        value = get_path(wrapped, entry.path)
        if isinstance(value, Mapping):
            hints[entry.path] = _mapping_keys(value)
    return hints
