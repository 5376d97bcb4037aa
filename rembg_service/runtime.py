"""
ONNX Runtime backend selection, provisioning and loading.

A process can host exactly one native ONNX Runtime build: the CPU package,
the DirectML package and the CUDA package all import as ``onnxruntime`` and
none of them can be unloaded. ``BackendSelector`` owns that fact as an
explicit state machine (``unloaded -> loading -> loaded`` or
``load_failed``) and every request goes through it:

 - the first request that needs a runtime loads it, later ones only
   validate that the loaded build can serve them;
 - to let callers flip between CPU and GPU without a restart, CPU requests
   prefer a cached GPU-capable build and simply pin execution to the CPU
   provider inside it;
 - a GPU request after a CPU-only build was loaded is refused with
   ``BackendSwitchUnsupported``, an explicit request for a different GPU
   build with ``RuntimeAlreadyLoaded``.

Runtime builds are fetched as wheels from PyPI; only the importable
``onnxruntime`` package (bindings plus native libraries) is kept.
"""

from __future__ import annotations

import ctypes.util
from dataclasses import dataclass, field
from enum import Enum
import importlib
import importlib.machinery
import importlib.metadata
import importlib.util
import logging
import os
from pathlib import Path
import platform
import shutil
import sys
from threading import Lock
from typing import Any, Callable, Iterable, List, Optional, Tuple

from . import config, pypi
from .cache import AssetCache, AssetSource
from .download import ProgressCallback, file_digest
from .errors import (
    BackendSwitchUnsupported,
    BackendUnavailable,
    InferenceError,
    RemovalError,
    RuntimeAlreadyLoaded,
    RuntimeLoadFailed,
)
from .registry import RUNTIME_PACKAGES, BackendKind

logger = logging.getLogger(__name__)

PACKAGE_NAME = "onnxruntime"


class Device(str, Enum):
    CPU = "cpu"
    GPU = "gpu"
    AUTO = "auto"


class GpuBackend(str, Enum):
    AUTO = "auto"
    DIRECTML = "directml"
    CUDA = "cuda"

    @property
    def kind(self) -> Optional[BackendKind]:
        if self is GpuBackend.AUTO:
            return None
        return BackendKind(self.value)


class BackendState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    LOAD_FAILED = "load_failed"


EXECUTION_PROVIDERS = {
    BackendKind.CPU: ["CPUExecutionProvider"],
    BackendKind.DIRECTML: ["DmlExecutionProvider", "CPUExecutionProvider"],
    BackendKind.CUDA: ["CUDAExecutionProvider", "CPUExecutionProvider"],
}


# ------------------------------------------------------------------------------
# Platform
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class PlatformInfo:
    os_name: str
    arch: str

    @classmethod
    def current(cls) -> "PlatformInfo":
        if sys.platform.startswith("win"):
            os_name = "windows"
        elif sys.platform == "darwin":
            os_name = "macos"
        else:
            os_name = "linux"
        machine = platform.machine().lower()
        arch = {"amd64": "x86_64", "x64": "x86_64", "arm64": "aarch64"}.get(machine, machine)
        return cls(os_name=os_name, arch=arch)

    def supports(self, kind: BackendKind) -> bool:
        if kind is BackendKind.CPU:
            return True
        if kind is BackendKind.DIRECTML:
            return self.os_name == "windows"
        return (self.os_name, self.arch) in {
            ("windows", "x86_64"),
            ("linux", "x86_64"),
            ("linux", "aarch64"),
        }

    def gpu_build_for_cpu(self, gpu_backend: GpuBackend) -> Optional[BackendKind]:
        """GPU-capable build worth loading for CPU work so GPU stays reachable."""
        if gpu_backend.kind is not None:
            return gpu_backend.kind if self.supports(gpu_backend.kind) else None
        if self.os_name == "windows":
            return BackendKind.DIRECTML
        if self.supports(BackendKind.CUDA):
            return BackendKind.CUDA
        return None


def probe_backend(kind: BackendKind, info: Optional[PlatformInfo] = None) -> bool:
    """Best-effort driver presence check; failure only demotes the backend."""
    info = info or PlatformInfo.current()
    try:
        if kind is BackendKind.CPU:
            return True
        if kind is BackendKind.DIRECTML:
            system_root = os.environ.get("SystemRoot", r"C:\Windows")
            return (Path(system_root) / "System32" / "d3d12.dll").exists() or bool(ctypes.util.find_library("d3d12"))
        if info.os_name == "windows":
            return bool(ctypes.util.find_library("nvcuda"))
        return bool(ctypes.util.find_library("cuda")) or shutil.which("nvidia-smi") is not None
    except Exception as exc:  # noqa: BLE001
        logger.warning("Probe for %s failed: %s", kind.value, exc)
        return False


# ------------------------------------------------------------------------------
# Plans + installs
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimePlan:
    kind: BackendKind
    execution: BackendKind = BackendKind.CPU
    explicit: bool = False
    fallback_reason: Optional[str] = None

    @property
    def package(self) -> str:
        return RUNTIME_PACKAGES[self.kind]

    def describe(self) -> str:
        text = f"{self.package} ({self.execution.value} execution)"
        if self.fallback_reason:
            text += f"; GPU unavailable: {self.fallback_reason}"
        return text


@dataclass(frozen=True)
class RuntimeInstall:
    kind: BackendKind
    package: str
    version: str
    root: Path
    main_library: Optional[Path] = None

    @property
    def package_dir(self) -> Path:
        return self.root / PACKAGE_NAME


def is_runtime_member(name: str) -> bool:
    """Keep only what ``import onnxruntime`` needs: the package init and ``capi``."""
    return name == f"{PACKAGE_NAME}/__init__.py" or name.startswith(f"{PACKAGE_NAME}/capi/")


def _is_native_library(name: str) -> bool:
    lower = name.lower()
    return lower.endswith((".dll", ".so", ".dylib", ".pyd")) or ".so." in lower


def find_main_library(os_name: str, files: Iterable[Path]) -> Optional[Path]:
    """
    Pick the core runtime library; when several match, the largest wins.

    Python wheels link the runtime into the binding module, so that module is
    the main library when no standalone core library ships.
    """
    files = list(files)
    preferred = {"windows": "onnxruntime.dll", "macos": "libonnxruntime.dylib"}.get(os_name, "libonnxruntime.so")
    best: Optional[Tuple[int, Path]] = None
    for path in files:
        name = path.name.lower()
        if name == preferred:
            return path
        if os_name == "windows":
            ok = name == "onnxruntime.dll"
        elif os_name == "macos":
            ok = name.startswith("libonnxruntime") and name.endswith(".dylib")
        else:
            ok = name.startswith("libonnxruntime.so")
        if not ok:
            continue
        size = path.stat().st_size if path.exists() else 0
        if best is None or size > best[0]:
            best = (size, path)
    if best is not None:
        return best[1]
    for path in files:
        if path.name.lower().startswith("onnxruntime_pybind11_state"):
            return path
    return None


class RuntimeProvisioner:
    """Downloads and extracts ONNX Runtime wheels into the asset cache."""

    def __init__(
        self,
        cache: AssetCache,
        settings: Optional[config.Settings] = None,
        info: Optional[PlatformInfo] = None,
        fetch_release: Callable[..., pypi.ProjectRelease] = pypi.fetch_release,
        interpreter: Optional[pypi.InterpreterTag] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings or cache.settings
        self.info = info or PlatformInfo.current()
        self.interpreter = interpreter or pypi.InterpreterTag.current()
        self._fetch_release = fetch_release

    def _importable(self, manifest: dict) -> bool:
        # Extracts made for another interpreter cannot be imported here.
        return manifest.get("python_tag") in (self.interpreter.python, "py3")

    def installed(self, kind: BackendKind) -> Optional[RuntimeInstall]:
        root = self.cache.runtime_dir(kind.value)
        manifest = self.cache.read_manifest(root)
        if manifest is None:
            return None
        if not self._importable(manifest):
            logger.info(
                "Ignoring %s runtime built for %s (running %s)",
                kind.value,
                manifest.get("python_tag"),
                self.interpreter.abi,
            )
            return None
        main = manifest.get("main_library")
        return RuntimeInstall(
            kind=kind,
            package=manifest.get("package", RUNTIME_PACKAGES[kind]),
            version=manifest.get("version", "unknown"),
            root=root,
            main_library=root / main if main else None,
        )

    def cached_kinds(self) -> List[BackendKind]:
        return [kind for kind in BackendKind if self.installed(kind) is not None]

    def downloaded_wheel(self, kind: BackendKind) -> Optional[Path]:
        """A verified wheel left behind by an interrupted extraction, if any."""
        directory = self.cache.runtime_download_dir(kind.value)
        if not directory.is_dir():
            return None
        prefix = RUNTIME_PACKAGES[kind].replace("-", "_") + "-"
        matches = [
            path
            for path in directory.glob("*.whl")
            if path.name.startswith(prefix)
            and pypi.wheel_matches(path.name, self.info.os_name, self.info.arch, self.interpreter)
        ]
        if not matches:
            return None
        return max(matches, key=lambda p: p.stat().st_mtime)

    def _wheel_or_install(self, kind: BackendKind) -> Optional[Path]:
        # The wheel is removed only after the extracted tree is in place.
        wheel = self.downloaded_wheel(kind)
        if wheel is not None:
            return wheel
        return self.cache.runtime_dir(kind.value) if self.installed(kind) is not None else None

    def download(
        self,
        kind: BackendKind,
        allow_download: bool,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[Path]:
        """
        Fetch and verify the wheel for ``kind``.

        Returns ``None`` when the runtime is already installed, the runtime
        directory when another request finished the install meanwhile, and the
        wheel path otherwise. A wheel already sitting in the download
        directory is reused without querying PyPI, also when downloads are
        disabled.
        """
        if self.installed(kind) is not None:
            return None
        package = RUNTIME_PACKAGES[kind]

        def resolve() -> Tuple[AssetSource, str]:
            release = self._fetch_release(package, self.settings.runtime_version, settings=self.settings)
            wheel = pypi.select_wheel(release, self.info.os_name, self.info.arch, self.interpreter)
            logger.info("Selected %s for %s", wheel.filename, kind.value)
            return AssetSource(url=wheel.url, checksum=wheel.checksum), wheel.filename

        return self.cache.ensure_resolved(
            f"runtime-wheel:{kind.value}",
            self.cache.runtime_download_dir(kind.value),
            resolve=resolve,
            find_ready=lambda: self._wheel_or_install(kind),
            allow_download=allow_download,
            on_progress=on_progress,
            what=f"runtime package {package}",
        )

    def extract(
        self,
        kind: BackendKind,
        wheel_path: Optional[Path],
        allow_download: bool,
    ) -> RuntimeInstall:
        installed = self.installed(kind)
        if installed is not None:
            return installed
        if wheel_path is None:
            wheel_path = self.download(kind, allow_download)
            if wheel_path is None:
                return self.installed(kind)
        root = self.cache.runtime_dir(kind.value)

        def manifest(files: List[str]) -> dict:
            natives = [Path(f) for f in files if _is_native_library(f)]
            main = find_main_library(self.info.os_name, natives)
            return {
                "package": RUNTIME_PACKAGES[kind],
                "version": pypi.parse_wheel_filename(wheel_path.name).version,
                "wheel": wheel_path.name,
                "sha256": file_digest(wheel_path),
                "python_tag": pypi.python_tag_for(wheel_path.name, self.interpreter),
                "files": files,
                "main_library": main.as_posix() if main else None,
            }

        self.cache.ensure_extracted(
            f"runtime:{kind.value}",
            archive=lambda: wheel_path,
            dest_dir=root,
            select=is_runtime_member,
            manifest=manifest,
            allow_download=True,
            accept=self._importable,
        )
        install = self.installed(kind)
        if install is None:
            raise BackendUnavailable(f"runtime {kind.value} missing after extraction", root=root)
        return install

    def ensure(
        self,
        kind: BackendKind,
        allow_download: bool,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RuntimeInstall:
        return self.extract(kind, self.download(kind, allow_download, on_progress), allow_download)



# ------------------------------------------------------------------------------
# Loaders
# ------------------------------------------------------------------------------


@dataclass
class LoadedRuntime:
    kind: BackendKind
    version: str
    module: Any
    origin: str
    infer_lock: Lock = field(default_factory=Lock, repr=False)

    def available_providers(self) -> List[str]:
        return list(self.module.get_available_providers())

    def create_session(self, model_path: Path, execution: BackendKind) -> Tuple[Any, BackendKind]:
        """
        Open an inference session pinned to ``execution``.

        Returns the session and the execution target actually in use: a GPU
        provider that fails to initialize falls back to CPU with a warning.
        """
        ort = self.module
        wanted = EXECUTION_PROVIDERS[execution]
        available = set(self.available_providers())
        providers = [p for p in wanted if p in available] or ["CPUExecutionProvider"]

        options = ort.SessionOptions()
        if execution is BackendKind.DIRECTML:
            # DirectML does not support memory patterns or parallel execution.
            options.enable_mem_pattern = False
            options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL

        try:
            session = ort.InferenceSession(str(model_path), sess_options=options, providers=providers)
        except Exception as exc:  # noqa: BLE001
            if execution is BackendKind.CPU:
                raise InferenceError(f"failed to load model {model_path.name}: {exc}", model=model_path) from exc
            logger.warning("%s init failed, falling back to CPU: %s", wanted[0], exc)
            try:
                session = ort.InferenceSession(str(model_path), providers=["CPUExecutionProvider"])
            except Exception as cpu_exc:  # noqa: BLE001
                raise InferenceError(
                    f"failed to load model {model_path.name}: {cpu_exc}", model=model_path
                ) from cpu_exc

        used = session.get_providers()
        if execution is not BackendKind.CPU and wanted[0] not in used:
            logger.warning("%s not active for %s, running on CPU", wanted[0], model_path.name)
            return session, BackendKind.CPU
        return session, execution


class CachedRuntimeLoader:
    """Imports the ``onnxruntime`` package extracted into the cache."""

    def __init__(self, info: Optional[PlatformInfo] = None) -> None:
        self.info = info or PlatformInfo.current()
        self._dll_dirs: list = []

    def load(self, kind: BackendKind, install: Optional[RuntimeInstall]) -> LoadedRuntime:
        if install is None:
            raise BackendUnavailable(f"runtime {kind.value} is not provisioned")
        existing = sys.modules.get(PACKAGE_NAME)
        if existing is not None:
            origin = Path(getattr(existing, "__file__", "") or "").resolve()
            if install.root.resolve() in origin.parents:
                return LoadedRuntime(kind, install.version, existing, str(origin))
            raise RuntimeAlreadyLoaded(
                f"onnxruntime is already imported from {origin}. Restart required to load {install.package}.",
                loaded=origin,
            )

        capi = install.package_dir / "capi"
        if self.info.os_name == "windows" and hasattr(os, "add_dll_directory"):
            self._dll_dirs.append(os.add_dll_directory(str(capi)))

        spec = importlib.machinery.PathFinder.find_spec(PACKAGE_NAME, [str(install.root)])
        if spec is None or spec.loader is None:
            raise BackendUnavailable(f"no importable onnxruntime under {install.root}", root=install.root)
        module = importlib.util.module_from_spec(spec)
        # Submodules import themselves as ``onnxruntime.capi...``.
        sys.modules[PACKAGE_NAME] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            for name in [n for n in sys.modules if n == PACKAGE_NAME or n.startswith(PACKAGE_NAME + ".")]:
                sys.modules.pop(name, None)
            raise
        logger.info("Loaded %s %s from %s", install.package, install.version, install.root)
        return LoadedRuntime(kind, install.version, module, str(install.root))


def system_runtime_kind() -> Optional[BackendKind]:
    """Kind of the ``onnxruntime`` distribution installed in the environment, if any."""
    for kind in (BackendKind.CUDA, BackendKind.DIRECTML, BackendKind.CPU):
        try:
            importlib.metadata.distribution(RUNTIME_PACKAGES[kind])
        except importlib.metadata.PackageNotFoundError:
            continue
        return kind
    return None


class SystemRuntimeLoader:
    """Uses the ``onnxruntime`` distribution installed alongside this package."""

    def load(self, kind: BackendKind, install: Optional[RuntimeInstall]) -> LoadedRuntime:
        module = importlib.import_module(PACKAGE_NAME)
        version = getattr(module, "__version__", "unknown")
        return LoadedRuntime(kind, version, module, getattr(module, "__file__", "system"))


# ------------------------------------------------------------------------------
# Selector
# ------------------------------------------------------------------------------


class BackendSelector:
    """Process-wide owner of the one-runtime-per-process decision."""

    def __init__(
        self,
        provisioner: RuntimeProvisioner,
        loader: Any = None,
        settings: Optional[config.Settings] = None,
        probe: Callable[[BackendKind, PlatformInfo], bool] = probe_backend,
    ) -> None:
        self.provisioner = provisioner
        self.settings = settings or provisioner.settings
        self.info = provisioner.info
        self.system = self.settings.runtime_source == "system"
        if loader is None:
            loader = SystemRuntimeLoader() if self.system else CachedRuntimeLoader(self.info)
        self.loader = loader
        self._probe = probe
        self._lock = Lock()
        self._state = BackendState.UNLOADED
        self._loaded: Optional[LoadedRuntime] = None
        self._failure: Optional[BaseException] = None

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def loaded(self) -> Optional[LoadedRuntime]:
        return self._loaded

    # ---------- planning ----------
    def _available_kinds(self) -> List[BackendKind]:
        if self.system:
            kind = system_runtime_kind()
            return [kind] if kind is not None else []
        return self.provisioner.cached_kinds()

    def _unusable_reason(self, kind: BackendKind) -> Optional[str]:
        if not self.info.supports(kind):
            return f"{kind.value} not supported on {self.info.os_name}/{self.info.arch}"
        if not self._probe(kind, self.info):
            return f"{kind.value} driver not detected"
        return None

    def _gpu_candidates(self, gpu_backend: GpuBackend, available: List[BackendKind]) -> List[BackendKind]:
        if gpu_backend.kind is not None:
            return [gpu_backend.kind]
        if self.info.os_name == "windows":
            # Prefer whatever is cached to avoid redundant downloads.
            order = [k for k in (BackendKind.DIRECTML, BackendKind.CUDA) if k in available]
            order.append(BackendKind.DIRECTML)
        elif self.info.os_name == "linux":
            order = [BackendKind.CUDA]
        else:
            order = []
        return list(dict.fromkeys(order))

    def _cpu_build(self, gpu_backend: GpuBackend, allow_download: bool, available: List[BackendKind]) -> BackendKind:
        if not self.settings.prefer_gpu_build_for_cpu:
            return BackendKind.CPU
        gpu_kind = self.info.gpu_build_for_cpu(gpu_backend)
        if gpu_kind is None:
            return BackendKind.CPU
        if gpu_kind in available:
            return gpu_kind
        if gpu_backend.kind is None:
            cached_gpu = [k for k in available if k.is_gpu and self.info.supports(k)]
            if cached_gpu:
                return cached_gpu[0]
        # DirectML wheels are small; fetching one keeps GPU reachable later.
        if gpu_kind is BackendKind.DIRECTML and allow_download:
            return gpu_kind
        return BackendKind.CPU

    def plan(self, device: Device, gpu_backend: GpuBackend, allow_download: bool) -> RuntimePlan:
        """Decide which build serves a request and where it executes."""
        device = Device(device)
        gpu_backend = GpuBackend(gpu_backend)
        with self._lock:
            loaded = self._loaded
            state = self._state
        if state is BackendState.LOAD_FAILED:
            raise self._load_failed_error()
        if loaded is not None:
            return self._plan_against_loaded(loaded.kind, device, gpu_backend)

        available = self._available_kinds()
        if self.system:
            return self._plan_system(device, gpu_backend, available)

        if device is Device.AUTO:
            device = Device.GPU if any(k.is_gpu for k in available) else Device.CPU
        if device is Device.CPU:
            kind = self._cpu_build(gpu_backend, allow_download, available)
            plan = RuntimePlan(kind=kind, execution=BackendKind.CPU)
            logger.debug("plan: %s", plan.describe())
            return plan

        reasons = []
        for kind in self._gpu_candidates(gpu_backend, available):
            reason = self._unusable_reason(kind)
            if reason is None:
                plan = RuntimePlan(kind=kind, execution=kind, explicit=gpu_backend.kind is not None)
                logger.debug("plan: %s", plan.describe())
                return plan
            logger.warning("Demoting %s backend: %s", kind.value, reason)
            reasons.append(reason)
        reason = "; ".join(reasons) or f"no GPU backend for {self.info.os_name}/{self.info.arch}"
        logger.warning("GPU requested but unavailable (%s); using CPU", reason)
        return RuntimePlan(
            kind=self._cpu_build(gpu_backend, False, available),
            execution=BackendKind.CPU,
            fallback_reason=reason,
        )

    def _plan_system(self, device: Device, gpu_backend: GpuBackend, available: List[BackendKind]) -> RuntimePlan:
        if not available:
            raise BackendUnavailable("REMBG_RUNTIME_SOURCE=system but no onnxruntime distribution is installed")
        kind = available[0]
        if device is Device.CPU or not kind.is_gpu:
            reason = None
            if device is Device.GPU:
                reason = f"installed {RUNTIME_PACKAGES[kind]} has no GPU support"
            return RuntimePlan(kind=kind, execution=BackendKind.CPU, fallback_reason=reason)
        if gpu_backend.kind is not None and gpu_backend.kind is not kind:
            raise BackendUnavailable(
                f"{gpu_backend.value} requested but the installed runtime is {RUNTIME_PACKAGES[kind]}"
            )
        return RuntimePlan(kind=kind, execution=kind, explicit=gpu_backend.kind is not None)

    def _plan_against_loaded(self, loaded: BackendKind, device: Device, gpu_backend: GpuBackend) -> RuntimePlan:
        if device is Device.CPU or (device is Device.AUTO and not loaded.is_gpu):
            return RuntimePlan(kind=loaded, execution=BackendKind.CPU)
        if device is Device.AUTO:
            return RuntimePlan(kind=loaded, execution=loaded)
        if loaded is BackendKind.CPU:
            wanted = self._gpu_candidates(gpu_backend, [])
            usable = [k for k in wanted if self._unusable_reason(k) is None]
            if not usable:
                return RuntimePlan(
                    kind=loaded,
                    execution=BackendKind.CPU,
                    fallback_reason=f"no usable GPU backend on {self.info.os_name}/{self.info.arch}",
                )
            raise BackendSwitchUnsupported(
                f"a CPU-only ONNX Runtime is loaded in this process; restart required to use {usable[0].value}",
                loaded=loaded.value,
                requested=usable[0].value,
            )
        if gpu_backend.kind is not None and gpu_backend.kind is not loaded:
            raise RuntimeAlreadyLoaded(
                f"ONNX Runtime {loaded.value} is already loaded; restart required to switch to {gpu_backend.value}",
                loaded=loaded.value,
                requested=gpu_backend.value,
            )
        return RuntimePlan(kind=loaded, execution=loaded, explicit=gpu_backend.kind is not None)

    def needs_provisioning(self) -> bool:
        """True until a runtime is loaded; system runtimes are never provisioned."""
        return not self.system and self._state is not BackendState.LOADED

    # ---------- loading ----------
    def _load_failed_error(self) -> RuntimeLoadFailed:
        return RuntimeLoadFailed(
            f"ONNX Runtime failed to load earlier in this process ({self._failure}); restart required",
            cause=self._failure,
        )

    def _check_compatible(self, loaded: LoadedRuntime, plan: RuntimePlan) -> RuntimePlan:
        if plan.kind is loaded.kind:
            return plan
        if plan.execution is BackendKind.CPU:
            return RuntimePlan(kind=loaded.kind, execution=BackendKind.CPU, fallback_reason=plan.fallback_reason)
        if loaded.kind is BackendKind.CPU:
            raise BackendSwitchUnsupported(
                f"a CPU-only ONNX Runtime is loaded in this process; restart required to use {plan.kind.value}",
                loaded=loaded.kind.value,
                requested=plan.kind.value,
            )
        if plan.explicit:
            raise RuntimeAlreadyLoaded(
                f"ONNX Runtime {loaded.kind.value} is already loaded; restart required to switch to {plan.kind.value}",
                loaded=loaded.kind.value,
                requested=plan.kind.value,
            )
        return RuntimePlan(kind=loaded.kind, execution=loaded.kind)

    def acquire(self, plan: RuntimePlan, install: Optional[RuntimeInstall] = None) -> Tuple[LoadedRuntime, RuntimePlan]:
        """
        Load the planned runtime if nothing is loaded yet, else validate the
        plan against the loaded one. Returns the runtime and the effective plan.
        """
        with self._lock:
            if self._state is BackendState.LOAD_FAILED:
                raise self._load_failed_error()
            if self._state is BackendState.LOADED:
                return self._loaded, self._check_compatible(self._loaded, plan)
            self._load_locked(plan.kind, install)
            return self._loaded, plan

    def load(self, kind: BackendKind, install: Optional[RuntimeInstall] = None) -> LoadedRuntime:
        """Load ``kind`` into the process; a different kind after a load is refused."""
        kind = BackendKind(kind)
        with self._lock:
            if self._state is BackendState.LOAD_FAILED:
                raise self._load_failed_error()
            if self._state is BackendState.LOADED:
                if self._loaded.kind is not kind:
                    raise RuntimeAlreadyLoaded(
                        f"ONNX Runtime {self._loaded.kind.value} is already loaded; restart required to load {kind.value}",
                        loaded=self._loaded.kind.value,
                        requested=kind.value,
                    )
                return self._loaded
            self._load_locked(kind, install)
            return self._loaded

    def _load_locked(self, kind: BackendKind, install: Optional[RuntimeInstall]) -> None:
        self._state = BackendState.LOADING
        logger.info("Loading ONNX Runtime backend %s", kind.value)
        try:
            runtime = self.loader.load(kind, install)
        except BackendUnavailable:
            # Nothing native was touched; a later request may provision and retry.
            self._state = BackendState.UNLOADED
            raise
        except RemovalError as exc:
            self._state = BackendState.LOAD_FAILED
            self._failure = exc
            raise
        except Exception as exc:  # noqa: BLE001
            self._state = BackendState.LOAD_FAILED
            self._failure = exc
            raise RuntimeLoadFailed(f"failed to load ONNX Runtime {kind.value}: {exc}", kind=kind.value) from exc
        self._loaded = runtime
        self._state = BackendState.LOADED
        logger.info("ONNX Runtime %s %s ready (%s)", runtime.kind.value, runtime.version, runtime.origin)
