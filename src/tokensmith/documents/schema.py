"""Partial schema checks for design documents.

Design documents are schema-loose: the models below only pin the handful of
structures the engine itself walks (token groups, button variants, section
layouts) and let every other key pass through untouched. Validation never
rewrites the payload; callers keep working with the raw mapping.
"""

from __future__ import annotations

import logging
from copy import deepcopy
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..ai.errors import DocumentValidationError

__all__ = [
    "ENVELOPE_KEYS",
    "DesignDocument",
    "DisplayTokens",
    "unwrap_envelope",
    "validate_document",
    "validate_display_tokens",
]

LOGGER = logging.getLogger(__name__)

ENVELOPE_KEYS: tuple[str, ...] = ("designV2", "design")


class _Loose(BaseModel):
    model_config = ConfigDict(extra="allow")


# ---------------------------------------------------------------------------
# Editable (v2) document
# ---------------------------------------------------------------------------


class ButtonComponent(_Loose):
    variants: dict[str, dict[str, Any]] = Field(default_factory=dict)


class Components(_Loose):
    button: ButtonComponent | None = None


class Tokens(_Loose):
    colors: dict[str, Any] | None = None
    typography: dict[str, dict[str, Any]] | None = None


class Section(_Loose):
    layout: dict[str, Any] | None = None


class DesignDocument(_Loose):
    """Loose model of the editable document.

    At least one of ``tokens``, ``components`` or ``sections`` must be present
    so an unrelated JSON object is not mistaken for a design.
    """

    tokens: Tokens | None = None
    components: Components | None = None
    sections: dict[str, Section] | None = None

    @model_validator(mode="after")
    def _require_design_root(self) -> "DesignDocument":
        if self.tokens is None and self.components is None and self.sections is None:
            raise ValueError("document has none of 'tokens', 'components' or 'sections'")
        return self


# ---------------------------------------------------------------------------
# Read-only display tokens
# ---------------------------------------------------------------------------


class SectionPadding(_Loose):
    mobile: str
    tablet: str
    desktop: str


class SectionBackground(_Loose):
    type: Literal["color", "image"]
    value: str


class SectionInnerLayout(_Loose):
    maxWidth: str
    padding: SectionPadding
    rounded: bool
    background: SectionBackground


class SectionLayout(_Loose):
    maxWidth: str
    padding: SectionPadding
    inner: SectionInnerLayout


class SectionConfig(_Loose):
    layout: SectionLayout


class DisplayTokens(_Loose):
    """The legacy token shape consumed by the rendering layer."""

    colors: dict[str, str]
    fonts: dict[str, str]
    sections: dict[str, SectionConfig] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def unwrap_envelope(payload: Any) -> Any:
    """Return the document inside a ``{designV2: ...}`` or ``{design: ...}`` envelope.

    Anything else is returned unchanged and treated as the bare document.
    """

    if isinstance(payload, Mapping):
        for key in ENVELOPE_KEYS:
            inner = payload.get(key)
            if isinstance(inner, Mapping):
                return inner
    return payload


def _issues(exc: ValidationError) -> tuple[str, ...]:
    issues = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
        issues.append(f"{location}: {error.get('msg', 'invalid')}")
    return tuple(issues)


def validate_document(payload: Any, *, source: str = "") -> dict[str, Any]:
    """Validate an editable document and return a private deep copy of it.

    Raises:
        DocumentValidationError: when the payload is not a mapping or fails
            the partial schema check.
    """

    document = unwrap_envelope(payload)
    if not isinstance(document, Mapping):
        raise DocumentValidationError(
            message=f"Design document must be a JSON object, got {type(document).__name__}",
            details={"source": source} if source else {},
        )
    try:
        DesignDocument.model_validate(document)
    except ValidationError as exc:
        issues = _issues(exc)
        LOGGER.warning("Design document from %s failed validation: %s", source or "<unknown>", issues)
        raise DocumentValidationError(
            details={"source": source} if source else {},
            issues=issues,
        ) from exc
    return deepcopy(dict(document))


def validate_display_tokens(payload: Any) -> dict[str, Any] | None:
    """Return the display tokens when valid, ``None`` otherwise."""

    document = unwrap_envelope(payload)
    if not isinstance(document, Mapping):
        return None
    try:
        DisplayTokens.model_validate(document)
    except ValidationError as exc:
        LOGGER.warning("Design tokens failed validation: %s", _issues(exc))
        return None
    return deepcopy(dict(document))
