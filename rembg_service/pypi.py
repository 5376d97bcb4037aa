"""PyPI JSON API client used to locate ONNX Runtime wheels."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import sys
import sysconfig
from typing import Dict, List, Optional, Tuple

import requests

from . import config
from .errors import BackendUnavailable, DownloadFailed, DownloadTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WheelFile:
    filename: str
    url: str
    sha256: str

    @property
    def checksum(self) -> str:
        return f"sha256:{self.sha256}"


@dataclass(frozen=True)
class ProjectRelease:
    name: str
    version: str
    wheels: List[WheelFile]


def fetch_release(
    name: str,
    version: Optional[str] = None,
    settings: Optional[config.Settings] = None,
    session: Optional[requests.Session] = None,
) -> ProjectRelease:
    """Fetch the wheel list of ``name`` at ``version`` (latest when omitted)."""
    settings = settings or config.get_settings()
    http = session or requests
    base = settings.pypi_base_url.rstrip("/")
    url = f"{base}/{name}/{version}/json" if version else f"{base}/{name}/json"
    try:
        resp = http.get(url, timeout=config.download_timeout(settings))
        resp.raise_for_status()
        payload = resp.json()
    except requests.Timeout as exc:
        raise DownloadTimeout(f"timed out querying {url}", url=url) from exc
    except (requests.RequestException, ValueError) as exc:
        raise DownloadFailed(f"pypi request failed: {url}: {exc}", url=url) from exc

    resolved = payload["info"]["version"]
    # Versioned endpoints list files under "urls"; the project endpoint under "releases".
    files = payload.get("urls") if version else payload.get("releases", {}).get(resolved)
    if files is None:
        files = payload.get("urls", [])
    wheels = [
        WheelFile(filename=f["filename"], url=f["url"], sha256=f["digests"]["sha256"])
        for f in files
        if f.get("packagetype") == "bdist_wheel"
    ]
    logger.debug("pypi %s %s: %d wheels", name, resolved, len(wheels))
    return ProjectRelease(name=name, version=resolved, wheels=wheels)


_PLATFORM_SUFFIXES: Dict[tuple, tuple] = {
    ("windows", "x86_64"): ("win_amd64.whl", None),
    ("windows", "aarch64"): ("win_arm64.whl", None),
    ("linux", "x86_64"): ("x86_64.whl", "manylinux"),
    ("linux", "aarch64"): ("aarch64.whl", "manylinux"),
    ("macos", "aarch64"): ("arm64.whl", "macosx"),
    ("macos", "x86_64"): ("x86_64.whl", "macosx"),
}


@dataclass(frozen=True)
class InterpreterTag:
    """CPython tag the bindings of a runtime wheel must be built for."""

    major: int
    minor: int
    free_threaded: bool = False

    @classmethod
    def current(cls) -> "InterpreterTag":
        return cls(
            major=sys.version_info[0],
            minor=sys.version_info[1],
            free_threaded=bool(sysconfig.get_config_var("Py_GIL_DISABLED")),
        )

    @property
    def python(self) -> str:
        return f"cp{self.major}{self.minor}"

    @property
    def abi(self) -> str:
        return self.python + ("t" if self.free_threaded else "")


@dataclass(frozen=True)
class WheelTags:
    name: str
    version: str
    python: Tuple[str, ...]
    abi: Tuple[str, ...]
    platform: str


def parse_wheel_filename(filename: str) -> WheelTags:
    """Split ``name-version[-build]-python-abi-platform.whl`` into its tags."""
    if not filename.endswith(".whl"):
        raise ValueError(f"not a wheel: {filename}")
    parts = filename[: -len(".whl")].split("-")
    if len(parts) not in (5, 6):
        raise ValueError(f"malformed wheel filename: {filename}")
    name, version = parts[0], parts[1]
    python, abi, plat = parts[-3:]
    return WheelTags(name, version, tuple(python.split(".")), tuple(abi.split(".")), plat)


def python_tag_for(filename: str, interpreter: InterpreterTag) -> Optional[str]:
    """
    Python tag under which ``filename`` imports on ``interpreter``, or ``None``.

    The wheel's ``onnxruntime`` package is imported into this process, so its
    compiled bindings must match the running CPython. Free-threaded builds
    only load on a free-threaded interpreter and vice versa.
    """
    try:
        tags = parse_wheel_filename(filename)
    except ValueError:
        return None
    if interpreter.python in tags.python and interpreter.abi in tags.abi:
        return interpreter.python
    if not interpreter.free_threaded and "abi3" in tags.abi:
        for py in tags.python:
            if py.startswith("cp3") and py[3:].isdigit() and int(py[3:]) <= interpreter.minor:
                return py
    if "none" in tags.abi and "py3" in tags.python:
        return "py3"
    return None


def wheel_matches(
    filename: str,
    os_name: str,
    arch: str,
    interpreter: Optional[InterpreterTag] = None,
) -> bool:
    rule = _PLATFORM_SUFFIXES.get((os_name, arch))
    if rule is None:
        return False
    suffix, marker = rule
    if not (filename.endswith(suffix) and (marker is None or marker in filename)):
        return False
    return python_tag_for(filename, interpreter or InterpreterTag.current()) is not None


def select_wheel(
    release: ProjectRelease,
    os_name: str,
    arch: str,
    interpreter: Optional[InterpreterTag] = None,
) -> WheelFile:
    interpreter = interpreter or InterpreterTag.current()
    for wheel in sorted(release.wheels, key=lambda w: w.filename):
        if wheel_matches(wheel.filename, os_name, arch, interpreter):
            return wheel
    raise BackendUnavailable(
        f"no {release.name} wheel for {os_name}/{arch} on {interpreter.abi} in {release.version}",
        package=release.name,
    )
