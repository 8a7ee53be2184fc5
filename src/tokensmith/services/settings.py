"""Settings dataclass and JSON persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

__all__ = ["Settings", "SettingsStore", "DEFAULT_SETTINGS_PATH"]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".tokensmith"
DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "TOKENSMITH_DOCUMENT_URL": "document_url",
    "TOKENSMITH_TOKENS_URL": "tokens_url",
    "TOKENSMITH_AI_BASE_URL": "ai_base_url",
    "TOKENSMITH_PERSISTENCE_URL": "persistence_url",
    "TOKENSMITH_MODEL_PROVIDER": "model_provider",
    "TOKENSMITH_PLANNER_MODEL": "planner_model",
    "TOKENSMITH_EXECUTOR_MODEL": "executor_model",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "TOKENSMITH_AUTOSAVE": "autosave_enabled",
    "TOKENSMITH_DEBUG_LOGGING": "debug_logging",
    "TOKENSMITH_TRACE_STREAM": "trace_stream",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "TOKENSMITH_PLAN_TIMEOUT": "plan_timeout",
    "TOKENSMITH_LOAD_TIMEOUT": "load_timeout",
    "TOKENSMITH_AUTOSAVE_DELAY": "autosave_delay",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "TOKENSMITH_MAX_RETRIES": "max_retries",
    "TOKENSMITH_SCOPE_INDEX_LIMIT": "scope_index_limit",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """Runtime configuration for the editor engine."""

    document_url: str = "http://localhost:3001/api/design-v2"
    tokens_url: str = "http://localhost:3001/api"
    ai_base_url: str = "http://localhost:3001/api"
    persistence_url: str = "http://localhost:3001"
    model_provider: str = "openrouter"
    planner_model: str = "google/gemini-2.5-flash"
    planner_model_name: str = "Gemini 2.5 Flash"
    executor_model: str = "google/gemini-2.5-flash"
    executor_model_name: str = "Gemini 2.5 Flash"
    plan_timeout: float = 45.0
    load_timeout: float = 8.0
    autosave_delay: float = 2.0
    autosave_enabled: bool = False
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    scope_index_limit: int = 200
    keep_backups: int | None = None
    debug_logging: bool = False
    log_dir: str | None = None
    trace_stream: bool = False
    log_levels: dict[str, str] = field(default_factory=dict)
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, then apply caller and environment overrides.

        Environment variables win over explicit ``overrides`` which win over
        the file on disk. Unknown keys in the file are dropped with a warning.
        """

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if payload.get("version") != _SETTINGS_VERSION:
                LOGGER.debug("Settings version %s differs from %s", payload.get("version"), _SETTINGS_VERSION)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="caller")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with an atomic file write."""

        data = asdict(settings)
        data["version"] = _SETTINGS_VERSION
        body = json.dumps(data, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not hold an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged = dict(settings.metadata or {})
            merged.update(metadata_override)
            filtered["metadata"] = merged
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)}
    unknown = sorted(key for key in payload if key not in allowed and key != "version")
    if unknown:
        LOGGER.warning("Ignoring unknown settings keys: %s", unknown)
    return {key: value for key, value in payload.items() if key in allowed}
