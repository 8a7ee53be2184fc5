"""Helpers for presenting document subtrees as editable fields.

Everything here is pure: functions take plain values and return new ones,
so an editor panel can rebuild its field list on every document change.
"""

from __future__ import annotations

import enum
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..core.paths import is_prefix, join_path

__all__ = [
    "ControlKind",
    "EnumOption",
    "Field",
    "ViewportGroups",
    "VIEWPORTS",
    "infer_control",
    "enum_options_for_key",
    "normalize_units",
    "collect_fields",
    "group_for_path",
    "should_show_group_header",
    "friendly_label",
    "placeholder_for_key",
    "viewport_for_path",
    "group_fields_by_viewport",
    "select_for_viewport",
]

MISC_GROUP = "Misc"
VIEWPORTS = ("mobile", "tablet", "desktop")


class ControlKind(str, enum.Enum):
    COLOR = "color"
    LENGTH = "length"
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"


@dataclass(slots=True, frozen=True)
class EnumOption:
    value: str
    label: str


@dataclass(slots=True, frozen=True)
class Field:
    """One leaf of a document subtree."""

    path: str
    key: str
    value: Any


# ---------------------------------------------------------------------------
# Control inference
# ---------------------------------------------------------------------------

_BOOLEAN_KEY = re.compile(r"^(is|has|use|show)")
_COLOR_VALUE = re.compile(
    r"^(#([0-9a-f]{3}|[0-9a-f]{6})"
    r"|rgba?\(.*"
    r"|hsl\(.*"
    r"|transparent|inherit|initial|unset"
    r"|black|white|red|green|blue|yellow|purple|orange|pink|gray|grey)$",
    re.IGNORECASE,
)
_FONT_FAMILY_KEY = re.compile(r"fontfamily$")
_TYPE_LENGTH_KEY = re.compile(r"(fontsize|lineheight|letterspacing)$")
_BOX_LENGTH_KEY = re.compile(
    r"(padding|margin|width|height|maxwidth|maxheight|minwidth|minheight"
    r"|borderwidth|borderradius|radius|spacing|gap)$"
)


def _is_color_key(key: str) -> bool:
    if "color" in key or key == "bg" or key.endswith("bg") or "overlay" in key:
        return True
    return "background" in key and "backgroundimage" not in key and "backgroundurl" not in key


def infer_control(key: str, value: Any) -> ControlKind:
    """Pick the editor control for ``key``.

    Color-like keys win over the value's type; ``is*``/``has*``/``use*``/
    ``show*`` keys are booleans. Strings are inspected for color literals
    and length-like key suffixes.
    """

    lowered = key.lower()
    if _is_color_key(lowered):
        return ControlKind.COLOR
    if isinstance(value, bool) or (_BOOLEAN_KEY.match(lowered) and lowered != "rounded"):
        return ControlKind.BOOLEAN
    if isinstance(value, (int, float)):
        return ControlKind.NUMBER
    if isinstance(value, str):
        text = value.strip()
        if _COLOR_VALUE.match(text):
            return ControlKind.COLOR
        if _FONT_FAMILY_KEY.search(lowered):
            return ControlKind.TEXT
        if _TYPE_LENGTH_KEY.search(lowered) or _BOX_LENGTH_KEY.search(lowered):
            return ControlKind.LENGTH
    return ControlKind.TEXT


def _options(*values: str) -> tuple[EnumOption, ...]:
    return tuple(EnumOption(value=value, label=value) for value in values)


_ENUM_OPTIONS: dict[str, tuple[EnumOption, ...]] = {
    "display": _options("block", "inline-block", "flex", "grid", "none"),
    "flexdirection": _options("row", "row-reverse", "column", "column-reverse"),
    "flexwrap": _options("nowrap", "wrap", "wrap-reverse"),
    "justifycontent": _options("flex-start", "center", "flex-end", "space-between", "space-around", "space-evenly"),
    "alignitems": _options("stretch", "flex-start", "center", "flex-end", "baseline"),
    "aligncontent": _options(
        "normal", "stretch", "center", "flex-start", "flex-end", "space-between", "space-around"
    ),
    "borderstyle": _options("solid", "dashed", "dotted", "double", "groove", "ridge", "inset", "outset", "none"),
    "overflow": _options("visible", "hidden", "scroll", "auto"),
    "position": _options("static", "relative", "absolute", "fixed", "sticky"),
    "textalign": _options("left", "center", "right", "justify"),
}


def enum_options_for_key(key: str) -> tuple[EnumOption, ...] | None:
    """Return the fixed choices for CSS-like keys, in camelCase or kebab-case."""

    return _ENUM_OPTIONS.get(key.lower().replace("-", ""))


# Bare numbers only: digits glued to a word, a dot or a unit are left alone.
_UNITLESS_NUMBER = re.compile(r"(?<![\w.])(-?\d+(?:\.\d+)?)(?![\w.%])")


def normalize_units(value: Any, default_unit: str = "px") -> Any:
    """Append ``default_unit`` to unitless non-zero numbers in ``value``.

    >>> normalize_units("10 0 1.5rem -4", "px")
    '10px 0 1.5rem -4px'
    """

    if not isinstance(value, str):
        return value

    def _append(match: re.Match[str]) -> str:
        number = match.group(1)
        if float(number) == 0:
            return number
        return f"{number}{default_unit}"

    return _UNITLESS_NUMBER.sub(_append, value)


# ---------------------------------------------------------------------------
# Field collection and grouping
# ---------------------------------------------------------------------------


def collect_fields(root: Any, base_path: str = "") -> list[Field]:
    """Return every leaf beneath ``root`` with its full dotted path.

    Mappings are descended into; lists and scalars are leaves.
    """

    fields: list[Field] = []

    def _walk(node: Mapping[str, Any], prefix: str) -> None:
        for key, value in node.items():
            path = join_path(prefix, str(key))
            if isinstance(value, Mapping):
                _walk(value, path)
            else:
                fields.append(Field(path=path, key=str(key), value=value))

    if isinstance(root, Mapping):
        _walk(root, base_path)
    return fields


def group_for_path(base: str, path: str) -> str:
    """Return the first segment of ``path`` below ``base``, or ``Misc``."""

    if not base:
        return path.split(".", 1)[0] or MISC_GROUP
    if not is_prefix(base, path) or path == base:
        return MISC_GROUP
    return path[len(base) + 1 :].split(".", 1)[0] or MISC_GROUP


def should_show_group_header(base: str, group: str, fields: Iterable[Field]) -> bool:
    """Hide the header of a group made of a single flat leaf."""

    items = list(fields)
    if group == MISC_GROUP or len(items) != 1:
        return True
    leaf = items[0].path
    if base and is_prefix(base, leaf):
        leaf = leaf[len(base) + 1 :]
    return "." in leaf


_FRIENDLY_LABELS = {
    "backgroundColor": "Background Color",
    "backgroundColorHover": "Background Color (Hover)",
    "background": "Background",
    "bg": "Background",
    "textColor": "Text Color",
    "textColorHover": "Text Color (Hover)",
    "borderColor": "Border Color",
    "borderColorHover": "Border Color (Hover)",
    "borderRadius": "Border Radius",
    "borderWidth": "Border Width",
    "borderStyle": "Border Style",
    "overlayColor": "Overlay Color",
    "headerBarColor": "Header Bar Color",
    "iconColor": "Icon Color",
    "minHeight": "Min Height",
    "maxHeight": "Max Height",
    "minWidth": "Min Width",
    "maxWidth": "Max Width",
    "alignItems": "Align Items",
    "justifyContent": "Justify Content",
    "flexDirection": "Flex Direction",
    "flexWrap": "Flex Wrap",
    "alignContent": "Align Content",
    "textAlign": "Text Align",
    "fontWeight": "Font Weight",
    "fontSize": "Font Size",
    "lineHeight": "Line Height",
    "letterSpacing": "Letter Spacing",
    "fontFamily": "Font Family",
    "imageOpacity": "Image Opacity",
    "iconSize": "Icon Size",
    "avatarSize": "Avatar Size",
}

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_WORD_START = re.compile(r"\b([a-z])")


def _title_from_key(key: str) -> str:
    spaced = _CAMEL_BOUNDARY.sub(r"\1 \2", key).replace("_", " ")
    return _WORD_START.sub(lambda match: match.group(1).upper(), spaced)


def friendly_label(path: str, viewport: str | None = None) -> str:
    """Human label for the leaf of ``path``.

    When ``viewport`` is given and the field is a responsive variant, the
    viewport is appended, e.g. ``Font Size (Desktop)``.
    """

    key = path.rsplit(".", 1)[-1]
    label = _FRIENDLY_LABELS.get(key) or _title_from_key(key)
    if viewport and viewport_for_path(path) is not None:
        label = f"{label} ({viewport.title()})"
    return label


def placeholder_for_key(key: str) -> str:
    lowered = key.lower()
    if _is_color_key(lowered):
        return "#000000"
    for needle, hint in (
        ("padding", "e.g., 1rem 0"),
        ("margin", "e.g., 0 auto"),
        ("radius", "e.g., 8px"),
        ("width", "e.g., 100%"),
        ("height", "e.g., 100vh"),
        ("size", "e.g., 2rem"),
        ("spacing", "e.g., 1rem"),
        ("gap", "e.g., 1rem"),
        ("weight", "400"),
        ("opacity", "1"),
        ("shadow", "none"),
        ("transition", "all 0.3s ease"),
    ):
        if needle in lowered:
            return hint
    return ""


# ---------------------------------------------------------------------------
# Responsive variants
# ---------------------------------------------------------------------------

_VIEWPORT_SEGMENT = re.compile(r"\.(mobile|tablet|desktop)$")
_VIEWPORT_KEY_SUFFIX = re.compile(r"^(.+?)(Sm|Md|Lg)$")
_SUFFIX_VIEWPORTS = {"Sm": "mobile", "Md": "tablet", "Lg": "desktop"}


def _leaf(path: str) -> str:
    return path.rsplit(".", 1)[-1]


def viewport_for_path(path: str) -> str | None:
    """Return the viewport a responsive variant targets, ``None`` for base fields.

    >>> viewport_for_path("sections.hero.layout.padding.desktop")
    'desktop'
    >>> viewport_for_path("typography.heading.fontSizeSm")
    'mobile'
    """

    segment = _VIEWPORT_SEGMENT.search(path)
    if segment:
        return segment.group(1)
    suffix = _VIEWPORT_KEY_SUFFIX.match(_leaf(path))
    if suffix:
        return _SUFFIX_VIEWPORTS[suffix.group(2)]
    return None


def _responsive_base(path: str) -> str | None:
    if _VIEWPORT_SEGMENT.search(path):
        return _VIEWPORT_SEGMENT.sub("", path)
    suffix = _VIEWPORT_KEY_SUFFIX.match(_leaf(path))
    if suffix:
        return path[: len(path) - len(suffix.group(2))]
    return None


@dataclass(slots=True)
class ViewportGroups:
    """Fields split into plain ones and responsive families keyed by base path."""

    static: list[Field] = field(default_factory=list)
    responsive: dict[str, list[Field]] = field(default_factory=dict)


def group_fields_by_viewport(fields: Iterable[Field]) -> ViewportGroups:
    """Group responsive variants (``.mobile``/``.tablet``/``.desktop`` segments
    and ``Sm``/``Md``/``Lg`` key suffixes) with their base field."""

    items = list(fields)
    paths = {item.path for item in items}
    groups = ViewportGroups()
    for item in items:
        key = _responsive_base(item.path)
        if key is None and any(f"{item.path}{suffix}" in paths for suffix in _SUFFIX_VIEWPORTS):
            key = item.path
        if key is None:
            groups.static.append(item)
        else:
            groups.responsive.setdefault(key, []).append(item)
    return groups


def _first(fields: list[Field], predicate: Any) -> Field | None:
    return next((item for item in fields if predicate(item.path)), None)


def _is_base(path: str) -> bool:
    return viewport_for_path(path) is None


def select_for_viewport(fields: Iterable[Field], viewport: str) -> list[Field]:
    """Keep plain fields plus one variant per responsive family.

    Desktop prefers ``.desktop``/``Lg``, then ``Md``, then the base field.
    Tablet prefers ``.tablet``/``Md``, then the base field. Mobile prefers the
    base field, then ``.mobile``/``Sm``.
    """

    if viewport not in VIEWPORTS:
        raise ValueError(f"viewport must be one of {VIEWPORTS}, got {viewport!r}")
    groups = group_fields_by_viewport(fields)
    selected = list(groups.static)
    for family in groups.responsive.values():
        if viewport == "desktop":
            choice = (
                _first(family, lambda path: viewport_for_path(path) == "desktop")
                or _first(family, lambda path: viewport_for_path(path) == "tablet")
                or _first(family, _is_base)
            )
        elif viewport == "tablet":
            choice = _first(family, lambda path: viewport_for_path(path) == "tablet") or _first(family, _is_base)
        else:
            choice = _first(family, _is_base) or _first(family, lambda path: viewport_for_path(path) == "mobile")
        selected.append(choice or family[0])
    return selected
