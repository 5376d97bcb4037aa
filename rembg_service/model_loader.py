"""
Model provisioning and inference-session management.

The loader:
 - makes a registry model available in the asset cache (download + verify),
 - keeps process-wide asset cache and backend selector instances,
 - opens one inference session per (model, execution target) on the loaded
   runtime and reuses it across requests.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Tuple

from . import config
from .cache import AssetCache, AssetSource
from .download import ProgressCallback
from .registry import BackendKind, ModelSpec
from .runtime import BackendSelector, LoadedRuntime, RuntimeProvisioner

logger = logging.getLogger(__name__)

_CACHE: Optional[AssetCache] = None
_SELECTOR: Optional[BackendSelector] = None
_LOCK = Lock()


def get_asset_cache() -> AssetCache:
    """Return the process-wide asset cache."""
    global _CACHE
    if _CACHE is not None:
        return _CACHE
    with _LOCK:
        if _CACHE is None:
            _CACHE = AssetCache(settings=config.get_settings())
    return _CACHE


def get_backend_selector() -> BackendSelector:
    """
    Return the process-wide backend selector.

    There is one per process because the native runtime it loads can never
    be unloaded or swapped.
    """
    global _SELECTOR
    if _SELECTOR is not None:
        return _SELECTOR
    cache = get_asset_cache()
    with _LOCK:
        if _SELECTOR is None:
            _SELECTOR = BackendSelector(RuntimeProvisioner(cache))
            logger.info("Backend selector initialized (runtime source: %s)", cache.settings.runtime_source)
    return _SELECTOR


def ensure_model(
    spec: ModelSpec,
    cache: AssetCache,
    allow_download: bool,
    on_progress: Optional[ProgressCallback] = None,
) -> Path:
    """Return the local path of ``spec``'s weights, downloading them if allowed."""
    return cache.ensure_asset(
        f"model:{spec.id}",
        AssetSource(url=spec.source_url, checksum=spec.expected_checksum),
        cache.model_path(spec.id),
        allow_download=allow_download,
        on_progress=on_progress,
    )


@dataclass
class ModelSession:
    session: Any
    execution: BackendKind
    input_name: str


class SessionPool:
    """Caches inference sessions keyed by model path and execution target."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._sessions: Dict[Tuple[str, str, BackendKind], ModelSession] = {}

    def get(self, runtime: LoadedRuntime, model_path: Path, execution: BackendKind) -> ModelSession:
        key = (runtime.origin, str(model_path), execution)
        with self._lock:
            cached = self._sessions.get(key)
            if cached is not None:
                return cached
            # Session creation runs native code on the shared runtime.
            with runtime.infer_lock:
                session, used = runtime.create_session(model_path, execution)
            entry = ModelSession(session=session, execution=used, input_name=session.get_inputs()[0].name)
            self._sessions[key] = entry
            logger.info("Opened session for %s (%s execution)", model_path.name, used.value)
            return entry

    def __len__(self) -> int:
        return len(self._sessions)
