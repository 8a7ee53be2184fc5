"""Design documents: schema checks, snapshots, the store, display tokens and field inspection."""

from .inspector import (
    ControlKind,
    Field,
    collect_fields,
    friendly_label,
    group_fields_by_viewport,
    infer_control,
    select_for_viewport,
)
from .schema import unwrap_envelope, validate_display_tokens, validate_document
from .snapshot import Snapshot, canonical_json, serialize_document
from .store import DocumentSource, DocumentStore, HttpDocumentSource
from .tokens import DesignTokensAdapter, TokenResolver, load_default_tokens

__all__ = [
    "ControlKind",
    "DesignTokensAdapter",
    "DocumentSource",
    "DocumentStore",
    "Field",
    "HttpDocumentSource",
    "Snapshot",
    "TokenResolver",
    "canonical_json",
    "collect_fields",
    "friendly_label",
    "group_fields_by_viewport",
    "infer_control",
    "load_default_tokens",
    "select_for_viewport",
    "serialize_document",
    "unwrap_envelope",
    "validate_display_tokens",
    "validate_document",
]
