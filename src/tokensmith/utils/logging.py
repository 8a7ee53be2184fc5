"""Logging setup for hosts embedding the engine.

Everything the engine logs lives under the ``tokensmith`` logger tree, one
child per subpackage (``tokensmith.ai``, ``tokensmith.documents`` ...).
:func:`setup_logging` installs the handlers once and then tunes that tree:
per-subpackage levels can be raised or lowered independently, and the
per-chunk traffic of a streamed run (job transitions, stream decoding, bus
publishes) stays at ``INFO`` even in debug mode unless ``trace_stream`` is set.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Mapping

__all__ = ["ENGINE_LOGGER", "STREAM_LOGGERS", "setup_logging", "set_component_levels", "get_log_path"]

ENGINE_LOGGER = "tokensmith"
# One record per chunk event or published JobStateChanged during an execution stream.
STREAM_LOGGERS: tuple[str, ...] = ("tokensmith.ai.jobs", "tokensmith.ai.stream", "tokensmith.services.events")

_DEFAULT_LOG_DIR = Path.home() / ".tokensmith" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore")
_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    component_levels: Mapping[str, int | str] | None = None,
    trace_stream: bool = False,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install a rotating file handler and an optional console handler.

    ``component_levels`` maps a subpackage (``"ai"``, ``"documents"``) or a
    full logger name to a level name or number. Repeated calls are no-ops
    unless ``force`` is set. Returns the log file path.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "tokensmith.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [file_handler]

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_external_loggers(level)
    _tune_stream_loggers(level, trace_stream)
    set_component_levels(component_levels or {})

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def set_component_levels(levels: Mapping[str, int | str]) -> dict[str, int]:
    """Apply per-subpackage levels and return what was set, by logger name.

    Unknown level names are skipped with a warning rather than failing setup.
    """

    applied: dict[str, int] = {}
    for component, raw_level in levels.items():
        level = _coerce_level(raw_level)
        if level is None:
            logging.getLogger(__name__).warning("Ignoring unknown log level %r for %s", raw_level, component)
            continue
        name = _component_logger_name(component)
        logging.getLogger(name).setLevel(level)
        applied[name] = level
    return applied


def get_log_path() -> Path | None:
    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("TOKENSMITH_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _component_logger_name(component: str) -> str:
    component = component.strip().strip(".")
    if not component or component == ENGINE_LOGGER:
        return ENGINE_LOGGER
    if component.startswith(ENGINE_LOGGER + "."):
        return component
    return f"{ENGINE_LOGGER}.{component}"


def _coerce_level(value: int | str) -> int | None:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(str(value).strip().upper())
    return resolved if isinstance(resolved, int) else None


def _quiet_external_loggers(root_level: int) -> None:
    quiet_level = max(logging.WARNING, root_level)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)


def _tune_stream_loggers(root_level: int, trace_stream: bool) -> None:
    level = root_level if trace_stream else max(logging.INFO, root_level)
    for logger_name in STREAM_LOGGERS:
        logging.getLogger(logger_name).setLevel(level)
