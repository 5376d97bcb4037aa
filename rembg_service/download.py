"""
Streaming downloader with progress reporting and checksum verification.

Bytes are streamed into ``<dst>.part``, hashed on the fly and renamed into
place only after the digest matches, so a file at ``dst`` is always complete
and verified.
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
import os
from pathlib import Path
import time
from typing import Callable, Optional, Tuple

import requests
from urllib3.exceptions import ReadTimeoutError

from . import config
from .errors import DownloadFailed, DownloadTimeout, IntegrityError

logger = logging.getLogger(__name__)

_SUPPORTED_ALGORITHMS = {"sha256", "md5"}


@dataclass(frozen=True)
class DownloadProgress:
    url: str
    downloaded: int
    total: Optional[int]
    elapsed: float
    done: bool


ProgressCallback = Callable[[DownloadProgress], None]


def parse_checksum(checksum: str) -> Tuple[str, str]:
    """Split ``"<algo>:<hex>"`` into its parts; a bare hex digest is sha256."""
    algo, sep, digest = checksum.strip().partition(":")
    if not sep:
        algo, digest = "sha256", algo
    algo = algo.lower()
    if algo not in _SUPPORTED_ALGORITHMS:
        raise ValueError(f"unsupported checksum algorithm: {algo}")
    return algo, _normalize_hex(digest)


def _normalize_hex(value: str) -> str:
    value = value.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value


def checksums_match(expected: str, got_hex: str) -> bool:
    _, digest = parse_checksum(expected)
    return digest == _normalize_hex(got_hex)


def file_digest(path: Path, algo: str = "sha256", chunk_size: int = 1024 * 1024) -> str:
    hasher = hashlib.new(algo)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def verify_file(path: Path, checksum: str, chunk_size: int = 1024 * 1024) -> None:
    """Raise ``IntegrityError`` when the digest of ``path`` differs from ``checksum``."""
    algo, expected = parse_checksum(checksum)
    got = file_digest(path, algo, chunk_size)
    if got != expected:
        raise IntegrityError(
            f"{algo} mismatch for {path.name}: expected {expected}, got {got}",
            path=path,
        )


def download_to_path(
    url: str,
    dst: Path,
    checksum: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
    settings: Optional[config.Settings] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    """
    Fetch ``url`` into ``dst``.

    Raises:
        DownloadTimeout: a read stalled past the timeout or the deadline passed.
        DownloadFailed: any other network or HTTP failure.
        IntegrityError: the payload does not match ``checksum``.
    """
    settings = settings or config.get_settings()
    http = session or requests
    dst = Path(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)
    tmp = dst.with_name(dst.name + ".part")
    if tmp.exists():
        tmp.unlink()

    hasher = None
    if checksum:
        algo, _ = parse_checksum(checksum)
        hasher = hashlib.new(algo)

    deadline = settings.download_deadline_seconds
    start = time.monotonic()
    last_report = start
    downloaded = 0
    total: Optional[int] = None

    logger.info("Downloading %s -> %s", url, dst)
    try:
        with http.get(url, stream=True, timeout=config.download_timeout(settings)) as resp:
            resp.raise_for_status()
            length = resp.headers.get("Content-Length")
            total = int(length) if length and length.isdigit() else None
            with open(tmp, "wb") as fh:
                for chunk in resp.iter_content(chunk_size=settings.download_chunk_size):
                    if not chunk:
                        continue
                    fh.write(chunk)
                    downloaded += len(chunk)
                    if hasher is not None:
                        hasher.update(chunk)
                    now = time.monotonic()
                    if deadline is not None and now - start > deadline:
                        raise DownloadTimeout(
                            f"download exceeded {deadline:.0f}s: {url}", url=url, downloaded=downloaded
                        )
                    if on_progress and now - last_report >= settings.progress_interval_seconds:
                        on_progress(DownloadProgress(url, downloaded, total, now - start, False))
                        last_report = now
    except DownloadTimeout:
        _discard(tmp)
        raise
    except requests.Timeout as exc:
        _discard(tmp)
        raise DownloadTimeout(f"timed out downloading {url}", url=url) from exc
    except requests.ConnectionError as exc:
        _discard(tmp)
        if _caused_by_timeout(exc):
            raise DownloadTimeout(f"timed out downloading {url}", url=url) from exc
        raise DownloadFailed(f"download failed: {url}: {exc}", url=url) from exc
    except requests.HTTPError as exc:
        _discard(tmp)
        status = exc.response.status_code if exc.response is not None else "?"
        raise DownloadFailed(f"download failed (HTTP {status}): {url}", url=url) from exc
    except (requests.RequestException, OSError) as exc:
        _discard(tmp)
        raise DownloadFailed(f"download failed: {url}: {exc}", url=url) from exc

    if on_progress:
        on_progress(DownloadProgress(url, downloaded, total, time.monotonic() - start, True))

    if hasher is not None and checksum:
        got = hasher.hexdigest()
        if not checksums_match(checksum, got):
            _discard(tmp)
            raise IntegrityError(
                f"checksum mismatch for {url}: expected {checksum}, got {got}",
                url=url,
            )

    os.replace(tmp, dst)
    logger.debug("Downloaded %d bytes from %s", downloaded, url)
    return dst


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def _caused_by_timeout(exc: requests.ConnectionError) -> bool:
    # Stalled reads inside iter_content surface as ConnectionError(ReadTimeoutError).
    return any(isinstance(arg, ReadTimeoutError) for arg in exc.args)
