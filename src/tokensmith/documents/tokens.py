"""Read-only design tokens used by the rendering layer.

Unlike the editable document, display tokens must always be available: any
failure to fetch or validate them falls back to the bundled defaults.
"""

from __future__ import annotations

import json
import logging
from copy import deepcopy
from functools import lru_cache
from importlib import resources
from typing import Any, Mapping

import httpx

from ..core.paths import InvalidPathError, get_path
from .schema import validate_display_tokens

__all__ = [
    "DEFAULT_TOKENS_RESOURCE",
    "TOKENS_ENDPOINT",
    "DesignTokensAdapter",
    "TokenResolver",
    "load_default_tokens",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TOKENS_RESOURCE = "design_default.json"
TOKENS_ENDPOINT = "/design"


@lru_cache(maxsize=1)
def _default_tokens_text() -> str:
    return resources.files(__package__).joinpath(DEFAULT_TOKENS_RESOURCE).read_text(encoding="utf-8")


def load_default_tokens() -> dict[str, Any]:
    """Return a fresh copy of the bundled default tokens."""

    return json.loads(_default_tokens_text())


class DesignTokensAdapter:
    """Fetches display tokens, falling back to the bundled defaults."""

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 8.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(headers=headers)
        self.last_source: str | None = None
        self.last_error: str | None = None

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}{TOKENS_ENDPOINT}"

    async def fetch(self) -> dict[str, Any]:
        """Return remote tokens when valid, the defaults otherwise. Never raises."""

        try:
            response = await self._client.get(self.endpoint, timeout=self._timeout)
        except httpx.HTTPError as exc:
            return self._fallback(f"request failed: {exc}")
        if not response.is_success:
            return self._fallback(f"HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError:
            return self._fallback("response is not valid JSON")

        tokens = validate_display_tokens(payload)
        if tokens is None:
            return self._fallback("response failed validation")
        self.last_source = "remote"
        self.last_error = None
        LOGGER.debug("Loaded design tokens from %s", self.endpoint)
        return tokens

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _fallback(self, reason: str) -> dict[str, Any]:
        LOGGER.warning("Using default design tokens (%s)", reason)
        self.last_source = "default"
        self.last_error = reason
        return load_default_tokens()


class TokenResolver:
    """Resolves dotted token paths to string values."""

    def __init__(self, tokens: Mapping[str, Any] | None = None) -> None:
        self._tokens = deepcopy(dict(tokens)) if tokens is not None else load_default_tokens()

    @property
    def tokens(self) -> dict[str, Any]:
        return deepcopy(self._tokens)

    def update(self, tokens: Mapping[str, Any]) -> None:
        self._tokens = deepcopy(dict(tokens))

    def get(self, path: str, fallback: str = "") -> str:
        try:
            value = get_path(self._tokens, path)
        except InvalidPathError:
            return fallback
        return value if isinstance(value, str) else fallback

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        try:
            return isinstance(get_path(self._tokens, path), str)
        except InvalidPathError:
            return False
