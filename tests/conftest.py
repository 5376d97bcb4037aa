from __future__ import annotations

import io
import json
from pathlib import Path
import threading
from types import SimpleNamespace

import numpy as np
from PIL import Image
import pytest

from rembg_service import config
from rembg_service.cache import MANIFEST_NAME, AssetCache
from rembg_service.download import DownloadProgress
from rembg_service.events import EventBus
from rembg_service.pipeline import InferencePipeline, RemovalService
from rembg_service.pypi import InterpreterTag
from rembg_service.registry import RUNTIME_PACKAGES, BackendKind
from rembg_service.runtime import BackendSelector, LoadedRuntime, PlatformInfo, RuntimeProvisioner

LINUX = PlatformInfo(os_name="linux", arch="x86_64")


class FakeFetcher:
    """Stands in for the HTTP downloader: writes ``payload`` and reports progress."""

    def __init__(self, payload: bytes = b"onnx-weights", gate: threading.Event = None, error: Exception = None):
        self.payload = payload
        self.gate = gate
        self.error = error
        self.started = threading.Event()
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, url, local_path, checksum=None, on_progress=None, settings=None) -> Path:
        with self._lock:
            self.calls.append(url)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        if on_progress:
            on_progress(DownloadProgress(url, len(self.payload) // 2, len(self.payload), 0.0, False))
            on_progress(DownloadProgress(url, len(self.payload), len(self.payload), 0.0, True))
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(self.payload)
        return local_path


class FakeSession:
    def __init__(self, path, providers, output):
        self.path = path
        self.providers = providers
        self.output = output
        self.runs = 0

    def get_inputs(self):
        return [SimpleNamespace(name="input.1")]

    def get_providers(self):
        return list(self.providers)

    def run(self, output_names, feeds):
        self.runs += 1
        tensor = feeds["input.1"]
        assert tensor.dtype == np.float32
        _, _, h, w = tensor.shape
        return [self.output(h, w)]


def half_mask_output(h: int, w: int) -> np.ndarray:
    """Foreground probability 1.0 on the left half, 0.0 on the right."""
    out = np.zeros((1, 1, h, w), dtype=np.float32)
    out[..., : w // 2] = 1.0
    return out


def make_fake_ort(output=half_mask_output, providers=("CPUExecutionProvider",)):
    sessions = []

    def inference_session(path, sess_options=None, providers=None):
        session = FakeSession(path, providers or ["CPUExecutionProvider"], output)
        sessions.append(session)
        return session

    return SimpleNamespace(
        SessionOptions=lambda: SimpleNamespace(),
        ExecutionMode=SimpleNamespace(ORT_SEQUENTIAL=0),
        InferenceSession=inference_session,
        get_available_providers=lambda: list(providers),
        sessions=sessions,
    )


class FakeLoader:
    def __init__(self, module=None, error: Exception = None):
        self.module = module or make_fake_ort()
        self.error = error
        self.loads = []

    def load(self, kind, install):
        self.loads.append(kind)
        if self.error is not None:
            raise self.error
        return LoadedRuntime(kind, "1.0-test", self.module, f"fake:{kind.value}")


def png_bytes(size=(20, 20), color=(255, 0, 0)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def install_fake_runtime(cache: AssetCache, kind: BackendKind) -> Path:
    root = cache.runtime_dir(kind.value)
    (root / "onnxruntime").mkdir(parents=True, exist_ok=True)
    (root / MANIFEST_NAME).write_text(
        json.dumps(
            {
                "package": RUNTIME_PACKAGES[kind],
                "version": "1.0-test",
                "python_tag": InterpreterTag.current().python,
                "files": [],
            }
        ),
        encoding="utf-8",
    )
    return root


@pytest.fixture
def settings(tmp_path) -> config.Settings:
    return config.Settings(
        cache_dir=tmp_path / "cache",
        progress_interval_seconds=0.0,
        prefer_gpu_build_for_cpu=False,
        runtime_source="cache",
        debug=False,
    )


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def cache(settings, fetcher) -> AssetCache:
    return AssetCache(fetcher=fetcher, settings=settings)


@pytest.fixture
def loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture
def selector(cache, settings, loader) -> BackendSelector:
    provisioner = RuntimeProvisioner(cache, settings=settings, info=LINUX, fetch_release=_no_pypi)
    return BackendSelector(provisioner, loader=loader, settings=settings, probe=lambda kind, info: False)


@pytest.fixture
def service(cache, selector, settings) -> RemovalService:
    install_fake_runtime(cache, BackendKind.CPU)
    return RemovalService(
        cache=cache,
        selector=selector,
        bus=EventBus(),
        pipeline=InferencePipeline(),
        settings=settings,
    )


def _no_pypi(*args, **kwargs):
    raise AssertionError("unexpected PyPI query")
