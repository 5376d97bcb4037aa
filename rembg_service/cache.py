"""
On-disk asset cache for model weights and extracted ONNX Runtime builds.

Layout under ``Settings.cache_dir``::

    models/<model_id>.onnx
    runtime/<backend_kind>/installed.json     manifest, written last
    runtime/<backend_kind>/onnxruntime/...    extracted runtime package
    runtime/.downloads/<backend_kind>/*.whl   verified wheels, removed after extraction

Every path is derived from the model id or backend kind alone, so repeated
runs reuse the same entries. Concurrent requests for the same key share one
in-flight download or extraction; different keys proceed in parallel.
"""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
import json
import logging
import os
from pathlib import Path, PurePosixPath
import shutil
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple
import zipfile

from . import config
from .download import DownloadProgress, ProgressCallback, download_to_path
from .errors import DownloadDisabled, ExtractionError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "installed.json"


class CacheState(str, Enum):
    MISSING = "missing"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    EXTRACTING = "extracting"
    READY = "ready"
    FAILED = "failed"


@dataclass
class CacheEntry:
    key: str
    local_path: Path
    state: CacheState = CacheState.MISSING
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class AssetSource:
    url: str
    checksum: Optional[str] = None


@dataclass
class _Flight:
    future: Future = field(default_factory=Future)
    listeners: List[ProgressCallback] = field(default_factory=list)


Fetcher = Callable[..., Path]


class AssetCache:
    """Content-addressed, idempotent store with per-key request deduplication."""

    def __init__(
        self,
        root: Optional[Path] = None,
        fetcher: Optional[Fetcher] = None,
        settings: Optional[config.Settings] = None,
    ) -> None:
        self.settings = settings or config.get_settings()
        self.root = Path(root) if root is not None else self.settings.cache_dir
        self._fetch = fetcher or download_to_path
        self._lock = Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, _Flight] = {}

    # ---------- layout ----------
    def model_path(self, model_id: str) -> Path:
        return self.root / "models" / f"{model_id}.onnx"

    def runtime_dir(self, backend_kind: str) -> Path:
        return self.root / "runtime" / backend_kind

    def runtime_download_dir(self, backend_kind: str) -> Path:
        return self.root / "runtime" / ".downloads" / backend_kind

    def read_manifest(self, directory: Path) -> Optional[dict]:
        manifest = directory / MANIFEST_NAME
        if not manifest.is_file():
            return None
        try:
            return json.loads(manifest.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache manifest %s: %s", manifest, exc)
            return None

    # ---------- state ----------
    def entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def _set_state(self, entry: CacheEntry, state: CacheState) -> None:
        with self._lock:
            entry.state = state
        logger.debug("cache %s -> %s", entry.key, state.value)

    # ---------- public API ----------
    def ensure_asset(
        self,
        key: str,
        source: AssetSource,
        local_path: Path,
        allow_download: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """
        Return ``local_path`` once it holds the verified asset.

        A ready entry returns without any network access. With downloads
        disabled a missing asset raises ``DownloadDisabled`` before any I/O.
        """
        local_path = Path(local_path)

        def work(entry: CacheEntry, broadcast: ProgressCallback) -> Path:
            return self._download(entry, source, local_path, broadcast)

        return self._run_once(
            key,
            local_path,
            ready=lambda: local_path if local_path.is_file() else None,
            work=work,
            allow_download=allow_download,
            on_progress=on_progress,
            what=source.url,
        )

    def ensure_resolved(
        self,
        key: str,
        directory: Path,
        resolve: Callable[[], Tuple[AssetSource, str]],
        find_ready: Callable[[], Optional[Path]],
        allow_download: bool = True,
        on_progress: Optional[ProgressCallback] = None,
        what: Optional[str] = None,
    ) -> Path:
        """
        Like ``ensure_asset`` for assets whose URL and file name must be looked up.

        ``find_ready`` is consulted first, so a file already on disk is reused
        even with downloads disabled. ``resolve`` returns the source and the
        file name inside ``directory``; only the request that performs the
        fetch calls it, so concurrent callers share one lookup.
        """
        directory = Path(directory)

        def work(entry: CacheEntry, broadcast: ProgressCallback) -> Path:
            source, filename = resolve()
            local_path = directory / filename
            with self._lock:
                entry.local_path = local_path
            return self._download(entry, source, local_path, broadcast)

        return self._run_once(
            key,
            directory,
            ready=find_ready,
            work=work,
            allow_download=allow_download,
            on_progress=on_progress,
            what=what or str(directory),
        )

    def ensure_extracted(
        self,
        key: str,
        archive: Callable[[], Path],
        dest_dir: Path,
        select: Callable[[str], bool],
        manifest: Callable[[List[str]], dict],
        allow_download: bool = True,
        discard_archive: bool = True,
        accept: Optional[Callable[[dict], bool]] = None,
    ) -> Path:
        """
        Extract the members of an archive accepted by ``select`` into ``dest_dir``.

        ``archive`` is called only when extraction is actually needed, so a
        ready destination never triggers the archive download. The manifest is
        written last; a tree without one is never treated as ready. A manifest
        rejected by ``accept`` marks the tree stale and it is extracted again.
        """
        dest_dir = Path(dest_dir)

        def ready() -> Optional[Path]:
            found = self.read_manifest(dest_dir)
            if found is None or (accept is not None and not accept(found)):
                return None
            return dest_dir

        def work(entry: CacheEntry, _broadcast: ProgressCallback) -> Path:
            archive_path = archive()
            self._set_state(entry, CacheState.EXTRACTING)
            files = _extract_members(archive_path, dest_dir, select, manifest)
            logger.info("Extracted %d files from %s into %s", len(files), archive_path.name, dest_dir)
            if discard_archive:
                try:
                    archive_path.unlink()
                except OSError as exc:
                    logger.warning("Could not remove archive %s: %s", archive_path, exc)
            return dest_dir

        return self._run_once(
            key,
            dest_dir,
            ready=ready,
            work=work,
            allow_download=allow_download,
            on_progress=None,
            what=str(dest_dir),
        )

    # ---------- internals ----------
    def _download(self, entry: CacheEntry, source: AssetSource, local_path: Path, broadcast: ProgressCallback) -> Path:
        checksum = source.checksum if self.settings.verify_checksums else None
        self._set_state(entry, CacheState.DOWNLOADING)

        def relay(progress: DownloadProgress) -> None:
            if progress.done:
                # Digest is compared right after the last byte lands.
                self._set_state(entry, CacheState.VERIFYING)
            broadcast(progress)

        return self._fetch(source.url, local_path, checksum=checksum, on_progress=relay, settings=self.settings)

    def _run_once(
        self,
        key: str,
        path: Path,
        ready: Callable[[], Optional[Path]],
        work: Callable[[CacheEntry, ProgressCallback], Path],
        allow_download: bool,
        on_progress: Optional[ProgressCallback],
        what: str,
    ) -> Path:
        leader = False
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry(key=key, local_path=path)
                self._entries[key] = entry
            flight = self._inflight.get(key)
            if flight is None:
                found = ready()
                if found is not None:
                    entry.state = CacheState.READY
                    entry.error = None
                    entry.local_path = found
                    logger.debug("cache hit %s", key)
                    return found
                if not allow_download:
                    raise DownloadDisabled(f"download required: {key} ({what})", key=key, url=what)
                flight = _Flight()
                self._inflight[key] = flight
                leader = True
            if on_progress is not None:
                flight.listeners.append(on_progress)

        if not leader:
            logger.debug("joining in-flight fetch of %s", key)
            return flight.future.result()

        def broadcast(progress: DownloadProgress) -> None:
            with self._lock:
                listeners = list(flight.listeners)
            for listener in listeners:
                listener(progress)

        try:
            result = work(entry, broadcast)
        except BaseException as exc:
            with self._lock:
                entry.state = CacheState.FAILED
                entry.error = exc
                self._inflight.pop(key, None)
            flight.future.set_exception(exc)
            logger.warning("cache %s failed: %s", key, exc)
            raise
        with self._lock:
            entry.state = CacheState.READY
            entry.error = None
            self._inflight.pop(key, None)
        flight.future.set_result(result)
        return result


def _safe_member_path(name: str) -> PurePosixPath:
    member = PurePosixPath(name.replace("\\", "/"))
    if member.is_absolute() or ".." in member.parts:
        raise ExtractionError(f"refusing unsafe archive member: {name}", member=name)
    return member


def _extract_members(
    archive_path: Path,
    dest_dir: Path,
    select: Callable[[str], bool],
    manifest: Callable[[List[str]], dict],
) -> List[str]:
    staging = dest_dir.with_name(dest_dir.name + ".extracting")
    if staging.exists():
        shutil.rmtree(staging)
    written: List[str] = []
    try:
        staging.mkdir(parents=True)
        with zipfile.ZipFile(archive_path) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                member = _safe_member_path(info.filename)
                if not select(member.as_posix()):
                    continue
                target = staging.joinpath(*member.parts)
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                written.append(member.as_posix())
        if not written:
            raise ExtractionError(f"no runtime files found in {archive_path.name}", archive=archive_path)
        (staging / MANIFEST_NAME).write_text(json.dumps(manifest(written), indent=2), encoding="utf-8")
        if dest_dir.exists():
            shutil.rmtree(dest_dir)
        os.replace(staging, dest_dir)
    except ExtractionError:
        shutil.rmtree(staging, ignore_errors=True)
        raise
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, KeyError) as exc:
        shutil.rmtree(staging, ignore_errors=True)
        raise ExtractionError(f"failed to extract {archive_path.name}: {exc}", archive=archive_path) from exc
    return written
