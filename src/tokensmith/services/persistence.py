"""Durable writers for the serialized design document.

Two adapters satisfy :class:`PersistenceAdapter`: one talks to the
backup-and-write HTTP endpoint, the other performs the same contract against
a local file (used in tests and single-host setups).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx

from ..ai.errors import SaveError

__all__ = [
    "SaveReceipt",
    "PersistenceAdapter",
    "HttpPersistenceAdapter",
    "FilePersistenceAdapter",
    "backup_timestamp",
    "SAVE_ENDPOINT",
    "HEALTH_ENDPOINT",
]

LOGGER = logging.getLogger(__name__)

SAVE_ENDPOINT = "/api/save-dbv2"
HEALTH_ENDPOINT = "/api/health"


@dataclass(slots=True, frozen=True)
class SaveReceipt:
    """Acknowledgement of a successful write."""

    backup_file: str | None
    timestamp: str
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"backupFile": self.backup_file, "timestamp": self.timestamp, "message": self.message}


@runtime_checkable
class PersistenceAdapter(Protocol):
    async def save(self, serialized: str) -> SaveReceipt:
        ...


def backup_timestamp(moment: datetime | None = None) -> str:
    """Return an ISO-8601 UTC stamp with ``:`` and ``.`` replaced by ``-``.

    >>> backup_timestamp(datetime(2025, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc))
    '2025-01-02T03-04-05-678Z'
    """

    moment = (moment or datetime.now(timezone.utc)).astimezone(timezone.utc)
    iso = moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{moment.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


# ---------------------------------------------------------------------------
# HTTP adapter
# ---------------------------------------------------------------------------


class HttpPersistenceAdapter:
    """Sends ``{designData}`` to the remote backup-and-write endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    @property
    def save_url(self) -> str:
        return f"{self._base_url}{SAVE_ENDPOINT}"

    async def save(self, serialized: str) -> SaveReceipt:
        try:
            response = await self._client.post(self.save_url, json={"designData": serialized})
        except httpx.HTTPError as exc:
            LOGGER.warning("Save request to %s failed: %s", self.save_url, exc)
            raise SaveError(message=f"Save request failed: {exc}", details={"url": self.save_url}) from exc

        if response.status_code >= 400:
            raise SaveError(
                message=f"Save endpoint returned HTTP {response.status_code}",
                details={"url": self.save_url, "body": response.text[:500]},
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise SaveError(message="Save endpoint returned a non-JSON body", status_code=response.status_code) from exc
        if not isinstance(payload, dict) or not payload.get("success"):
            message = payload.get("message") if isinstance(payload, dict) else None
            raise SaveError(
                message=str(message or "Save endpoint reported failure"),
                details={"response": payload},
                status_code=response.status_code,
            )

        receipt = SaveReceipt(
            backup_file=payload.get("backupFile"),
            timestamp=str(payload.get("timestamp") or backup_timestamp()),
            message=str(payload.get("message") or ""),
        )
        LOGGER.info("Design saved remotely (backup=%s)", receipt.backup_file)
        return receipt

    async def health(self) -> bool:
        """Return ``True`` when the liveness probe answers 2xx."""

        url = f"{self._base_url}{HEALTH_ENDPOINT}"
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            LOGGER.debug("Health probe %s failed: %s", url, exc)
            return False
        return response.is_success

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Local file adapter
# ---------------------------------------------------------------------------


_COLLISION_SUFFIX = re.compile(r"^(?P<stamp>.*?)(?:-(?P<counter>\d+))?$")


def _backup_order(path: Path) -> tuple[str, int]:
    # "<stem>_backup_<stamp>[-<counter>]": a counter marks a later save within the same stamp.
    tail = path.stem.rsplit("_backup_", 1)[-1]
    match = _COLLISION_SUFFIX.match(tail)
    counter = match.group("counter") if match else None
    return (match.group("stamp") if match else tail, int(counter) if counter else 0)


class FilePersistenceAdapter:
    """Writes the document to ``path`` after copying the previous version aside.

    Backups are named ``<stem>_backup_<timestamp><suffix>`` next to the target.
    When ``keep_backups`` is set, only that many of the newest backups survive.
    """

    def __init__(self, path: Path | str, *, keep_backups: int | None = None) -> None:
        if keep_backups is not None and keep_backups < 0:
            raise ValueError("keep_backups must be >= 0")
        self._path = Path(path)
        self._keep_backups = keep_backups

    @property
    def path(self) -> Path:
        return self._path

    async def save(self, serialized: str) -> SaveReceipt:
        try:
            json.loads(serialized)
        except json.JSONDecodeError as exc:
            raise SaveError(message="Refusing to persist invalid JSON", retryable=False) from exc
        try:
            return await asyncio.to_thread(self._write, serialized)
        except OSError as exc:
            LOGGER.warning("Writing %s failed: %s", self._path, exc)
            raise SaveError(message=f"Failed to write {self._path.name}: {exc}", details={"path": str(self._path)}) from exc

    async def health(self) -> bool:
        return self._path.parent.is_dir() and os.access(self._path.parent, os.W_OK)

    def backups(self) -> list[Path]:
        """Return existing backups, oldest first."""

        pattern = f"{self._path.stem}_backup_*{self._path.suffix}"
        return sorted(self._path.parent.glob(pattern), key=_backup_order)

    def _write(self, serialized: str) -> SaveReceipt:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        stamp = backup_timestamp()
        backup_path: Path | None = None
        if self._path.exists():
            backup_path = self._unique_backup_path(stamp)
            shutil.copy2(self._path, backup_path)

        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_text(serialized, encoding="utf-8")
        tmp_path.replace(self._path)
        self._prune()
        LOGGER.info("Design saved to %s (backup=%s)", self._path, backup_path.name if backup_path else None)
        return SaveReceipt(
            backup_file=backup_path.name if backup_path else None,
            timestamp=stamp,
            message="Design saved",
        )

    def _unique_backup_path(self, stamp: str) -> Path:
        candidate = self._path.with_name(f"{self._path.stem}_backup_{stamp}{self._path.suffix}")
        counter = 1
        while candidate.exists():
            candidate = self._path.with_name(f"{self._path.stem}_backup_{stamp}-{counter}{self._path.suffix}")
            counter += 1
        return candidate

    def _prune(self) -> None:
        if self._keep_backups is None:
            return
        backups = self.backups()
        excess = len(backups) - self._keep_backups
        for stale in backups[: max(0, excess)]:
            stale.unlink(missing_ok=True)
            LOGGER.debug("Pruned backup %s", stale.name)
