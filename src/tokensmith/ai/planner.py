"""Client for the scope-planning endpoint.

The planner turns a free-text instruction plus the scope index into a
:class:`MutationPlan`: named groups of ``{path, allowedFields}`` restrictions
that bound what the executor may touch. Plans are normalised on arrival so
every path is covered by the index that was sent.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import AuthenticationError, ErrorCategory, PlanningError
from .scope_index import ROOT_KEY, ScopeIndex

__all__ = [
    "SCOPE_MODES",
    "PLAN_ENDPOINT",
    "PRIMARY_BUTTON_FIELDS",
    "ModelRef",
    "DEFAULT_PLANNER_MODEL",
    "PlanEntry",
    "MutationPlan",
    "PlanResult",
    "PlanClient",
    "ensure_plan_coverage",
    "restrict_to_index",
    "wants_primary_buttons",
]

LOGGER = logging.getLogger(__name__)

SCOPE_MODES: tuple[str, ...] = ("auto", "selection", "global")
PLAN_ENDPOINT = "/ai-plan-scope"
PRIMARY_GROUP = "primary"
PRIMARY_BUTTON_ID = "components.button.variants.primary"
PRIMARY_BUTTON_FIELDS: tuple[str, ...] = (
    "backgroundColor",
    "backgroundColorHover",
    "textColor",
    "textColorHover",
    "borderColor",
    "borderColorHover",
    "padding",
    "fontSize",
    "fontWeight",
    "borderRadius",
    "borderWidth",
)

_BUTTON_PATTERN = re.compile(r"(button|bot[aã]o|bot[oõ]es|btn)")
_PRIMARY_PATTERN = re.compile(r"(primary|prim[aá]ri[oa]s?)")
_PRIMARY_BUTTON_PT_PATTERN = re.compile(r"bot[ãa]o.+prim[aá]ri")


@dataclass(slots=True, frozen=True)
class ModelRef:
    """Identifies an AI model by provider and id."""

    provider: str
    id: str
    name: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"provider": self.provider, "id": self.id, "name": self.name or self.id}

    @classmethod
    def from_value(cls, value: Any) -> ModelRef | None:
        if isinstance(value, ModelRef):
            return value
        if isinstance(value, Mapping) and value.get("id"):
            return cls(
                provider=str(value.get("provider") or ""),
                id=str(value["id"]),
                name=str(value.get("name") or ""),
            )
        if isinstance(value, str) and value:
            return cls(provider="", id=value)
        return None


DEFAULT_PLANNER_MODEL = ModelRef(provider="openrouter", id="google/gemini-2.5-flash", name="Gemini 2.5 Flash")


@dataclass(slots=True, frozen=True)
class PlanEntry:
    path: str
    allowed_fields: tuple[str, ...] = ()
    extra: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = deepcopy(dict(self.extra))
        payload["path"] = self.path
        payload["allowedFields"] = list(self.allowed_fields)
        return payload


@dataclass(slots=True, frozen=True)
class MutationPlan:
    """Ordered plan groups plus any non-group keys the planner returned."""

    groups: Mapping[str, tuple[PlanEntry, ...]] = field(default_factory=dict)
    extras: Mapping[str, Any] = field(default_factory=dict)

    def group(self, name: str) -> tuple[PlanEntry, ...]:
        return tuple(self.groups.get(name, ()))

    def entries(self) -> list[tuple[str, PlanEntry]]:
        return [(name, entry) for name, entries in self.groups.items() for entry in entries]

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(entry.path for _, entry in self.entries())

    def contains(self, group: str, path: str) -> bool:
        return any(entry.path == path for entry in self.group(group))

    def __len__(self) -> int:
        return sum(len(entries) for entries in self.groups.values())

    def with_prepended(self, group: str, entry: PlanEntry) -> MutationPlan:
        groups = dict(self.groups)
        groups[group] = (entry, *groups.get(group, ()))
        return MutationPlan(groups=groups, extras=self.extras)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = deepcopy(dict(self.extras))
        for name, entries in self.groups.items():
            payload[name] = [entry.to_dict() for entry in entries]
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> MutationPlan:
        """Parse the planner's ``plan`` object.

        List values become groups; anything else is kept verbatim as an extra.
        Raises :class:`PlanningError` for entries without a string path.
        """

        if not isinstance(payload, Mapping):
            raise PlanningError(message="Planner returned no plan object", reason="malformed")
        groups: dict[str, tuple[PlanEntry, ...]] = {}
        extras: dict[str, Any] = {}
        for name, value in payload.items():
            if not isinstance(value, list):
                extras[str(name)] = deepcopy(value)
                continue
            entries = []
            for position, raw in enumerate(value):
                entries.append(_parse_entry(raw, f"{name}[{position}]"))
            groups[str(name)] = tuple(entries)
        return cls(groups=groups, extras=extras)


def _parse_entry(raw: Any, where: str) -> PlanEntry:
    if not isinstance(raw, Mapping):
        raise PlanningError(message=f"Plan entry {where} is not an object", reason="malformed")
    path = raw.get("path")
    if not isinstance(path, str) or not path.strip():
        raise PlanningError(message=f"Plan entry {where} has no path", reason="malformed")
    fields_value = raw.get("allowedFields")
    allowed: tuple[str, ...] = ()
    if isinstance(fields_value, Sequence) and not isinstance(fields_value, str):
        allowed = tuple(str(item) for item in fields_value)
    extra = {key: deepcopy(value) for key, value in raw.items() if key not in ("path", "allowedFields")}
    return PlanEntry(path=path.strip(), allowed_fields=allowed, extra=extra)


@dataclass(slots=True, frozen=True)
class PlanResult:
    """Outcome of one planning request."""

    plan: MutationPlan
    plan_time_ms: float | None = None
    model: ModelRef | None = None
    dropped: tuple[tuple[str, PlanEntry], ...] = ()
    coverage_added: bool = False
    raw: Mapping[str, Any] = field(default_factory=dict)

    def planner_output(self) -> dict[str, Any]:
        """Return the payload forwarded to the executor as ``plannerOutput``."""

        output = deepcopy(dict(self.raw))
        output["success"] = True
        output["plan"] = self.plan.to_dict()
        if self.plan_time_ms is not None:
            output["planTimeMs"] = self.plan_time_ms
        if self.model is not None:
            output["model"] = self.model.to_dict()
        return output


# ---------------------------------------------------------------------------
# Plan normalisation
# ---------------------------------------------------------------------------


def _normalize_path(path: str, index: ScopeIndex) -> str | None:
    if index.covers(path):
        return path
    rooted = f"{ROOT_KEY}.{path}"
    if not path.startswith(ROOT_KEY + ".") and index.covers(rooted):
        return rooted
    return None


def restrict_to_index(plan: MutationPlan, index: ScopeIndex) -> tuple[MutationPlan, tuple[tuple[str, PlanEntry], ...]]:
    """Drop entries whose path the index does not cover.

    Paths given relative to the document are re-rooted under the envelope key
    when that makes them covered.
    """

    groups: dict[str, tuple[PlanEntry, ...]] = {}
    dropped: list[tuple[str, PlanEntry]] = []
    for name, entries in plan.groups.items():
        kept: list[PlanEntry] = []
        for entry in entries:
            normalized = _normalize_path(entry.path, index)
            if normalized is None:
                dropped.append((name, entry))
                continue
            if normalized != entry.path:
                entry = PlanEntry(path=normalized, allowed_fields=entry.allowed_fields, extra=entry.extra)
            kept.append(entry)
        groups[name] = tuple(kept)
    if dropped:
        LOGGER.warning(
            "Dropped %d plan entr%s outside the scope index: %s",
            len(dropped),
            "y" if len(dropped) == 1 else "ies",
            [entry.path for _, entry in dropped],
        )
    return MutationPlan(groups=groups, extras=plan.extras), tuple(dropped)


def wants_primary_buttons(prompt: str) -> bool:
    text = (prompt or "").lower()
    if not _BUTTON_PATTERN.search(text):
        return False
    return bool(_PRIMARY_PATTERN.search(text) or _PRIMARY_BUTTON_PT_PATTERN.search(text))


def ensure_plan_coverage(prompt: str, index: ScopeIndex, plan: MutationPlan) -> MutationPlan:
    """Add the primary button variant when the prompt asks for it and the plan forgot.

    Returns ``plan`` itself when nothing needs to change, so applying it twice
    yields the same plan.
    """

    entry = index.find(PRIMARY_BUTTON_ID)
    if entry is None or not wants_primary_buttons(prompt):
        return plan
    if plan.contains(PRIMARY_GROUP, entry.path):
        return plan
    LOGGER.info("Injecting %s into the '%s' plan group", entry.path, PRIMARY_GROUP)
    return plan.with_prepended(PRIMARY_GROUP, PlanEntry(path=entry.path, allowed_fields=PRIMARY_BUTTON_FIELDS))


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


class PlanClient:
    """Posts planning requests; never retries on its own."""

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 45.0,
        default_model: ModelRef = DEFAULT_PLANNER_MODEL,
        headers: dict[str, str] | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._default_model = default_model
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(headers=headers)

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}{PLAN_ENDPOINT}"

    @property
    def default_model(self) -> ModelRef:
        return self._default_model

    async def plan(
        self,
        prompt: str,
        index: ScopeIndex,
        *,
        selection_hint: Any = None,
        scope_mode: str = "auto",
        model: ModelRef | None = None,
        shape_hints: Mapping[str, Sequence[str]] | None = None,
    ) -> PlanResult:
        if scope_mode not in SCOPE_MODES:
            raise ValueError(f"scope_mode must be one of {SCOPE_MODES}, got {scope_mode!r}")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt must be a non-empty string")

        chosen = model or self._default_model
        payload: dict[str, Any] = {
            "prompt": prompt,
            "index": index.to_dict(),
            "scopeMode": scope_mode,
            "shapeHints": {path: list(keys) for path, keys in (shape_hints or {}).items()},
            "model": chosen.to_dict(),
        }
        if selection_hint is not None:
            payload["selectionHint"] = selection_hint

        LOGGER.info("Planning '%s' over %d indexed paths (mode=%s)", prompt[:80], len(index), scope_mode)
        try:
            body = await asyncio.wait_for(self._request(payload), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise PlanningError(
                message=f"Planner timed out after {self._timeout:.0f}s",
                reason="timeout",
                details={"endpoint": self.endpoint},
            ) from exc

        plan = MutationPlan.from_dict(body.get("plan"))
        plan, dropped = restrict_to_index(plan, index)
        covered = ensure_plan_coverage(prompt, index, plan)
        result = PlanResult(
            plan=covered,
            plan_time_ms=_as_float(body.get("planTimeMs")),
            model=ModelRef.from_value(body.get("model")) or chosen,
            dropped=dropped,
            coverage_added=covered is not plan,
            raw={key: deepcopy(value) for key, value in body.items() if key != "plan"},
        )
        LOGGER.info(
            "Plan ready: %d entr%s in %s ms (dropped=%d)",
            len(covered),
            "y" if len(covered) == 1 else "ies",
            result.plan_time_ms,
            len(dropped),
        )
        return result

    async def _request(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(self.endpoint, json=payload, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise PlanningError(message="Planner request timed out", reason="timeout") from exc
        except httpx.HTTPError as exc:
            raise PlanningError(
                category=ErrorCategory.NETWORK,
                message=f"Planner failed: {exc}",
                reason="transport",
                details={"endpoint": self.endpoint},
            ) from exc

        status = response.status_code
        if status == 401:
            raise AuthenticationError(message="Planner failed: Authentication required")
        if status >= 500:
            raise PlanningError(message="Planner failed: Server error - please try again", reason="server", status_code=status)
        if status >= 400:
            raise PlanningError(message=f"Planner failed: Request failed ({status})", reason="status", status_code=status)
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise PlanningError(message="Planner returned a non-JSON body", reason="malformed", status_code=status) from exc
        if not isinstance(body, dict):
            raise PlanningError(message="Planner returned a non-object body", reason="malformed", status_code=status)
        if not body.get("success"):
            message = body.get("error") or "Planner returned unsuccessful response"
            raise PlanningError(message=f"Planner failed: {message}", reason="rejected", status_code=status)
        return body

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)
