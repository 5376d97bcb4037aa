"""
High-level background removal pipeline.

`RemovalService.remove` is the main entry point used by the HTTP API, the
worker pool and the local CLI helper. Orchestration per request:

    resolve -> download -> verify -> extract -> load_runtime
            -> preprocess -> infer -> postprocess -> encode -> done

Every stage reports exactly one completion event on the bus, and every
request ends with exactly one terminal ``done`` or ``error`` event.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
from threading import Lock
from typing import Callable, Optional, Tuple

import cv2
import numpy as np
from PIL import Image
from pydantic import BaseModel, Field, validator

from . import config
from .cache import AssetCache
from .download import DownloadProgress
from .errors import InferenceError, RemovalError
from .events import EventBus, ProgressEvent, RequestProgress, RequestTracker, Stage
from .model_loader import ModelSession, SessionPool, ensure_model, get_asset_cache, get_backend_selector
from .postprocessing import encode_png, parse_hex_color, refine_and_compose, standalone_mask
from .preprocessing import decode_image, prepare_tensor
from .registry import BackendKind, ModelSpec, OutputKind, lookup
from .runtime import BackendSelector, Device, GpuBackend, LoadedRuntime

logger = logging.getLogger(__name__)


class RemovalOptions(BaseModel):
    model: str = Field(default_factory=lambda: config.get_settings().default_model)
    device: Device = Device.AUTO
    gpu_backend: GpuBackend = GpuBackend.AUTO
    mask_threshold: Optional[int] = Field(None, ge=0, le=255)
    bgcolor: Optional[str] = None
    color_key_tolerance: Optional[int] = Field(None, ge=0)
    allow_download: bool = Field(default_factory=lambda: config.get_settings().allow_download)
    include_mask: bool = False

    class Config:
        frozen = True

    @validator("bgcolor")
    def validate_bgcolor(cls, v: Optional[str]) -> Optional[str]:  # noqa: B902
        if v is None or not v.strip():
            return None
        parse_hex_color(v)
        return v.strip()


@dataclass(frozen=True)
class RemovalRequest:
    request_id: int
    image_bytes: bytes
    options: RemovalOptions


@dataclass(frozen=True)
class RemovalResult:
    request_id: int
    output_png: bytes
    mask_png: Optional[bytes]
    model: str
    backend: str
    device: str
    width: int
    height: int


# ---------- inference ----------


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(x, -50.0, 50.0)))


def to_probability(output: np.ndarray, spec: ModelSpec) -> np.ndarray:
    """Collapse a raw (1, C, H, W) model output into an (H, W) foreground probability."""
    out = np.asarray(output, dtype=np.float32)
    if out.ndim == 3:
        out = out[:, np.newaxis]
    if out.ndim != 4:
        raise InferenceError(f"unexpected output rank: {out.ndim} (expected 4)")
    if out.shape[0] != 1:
        raise InferenceError(f"unexpected batch size: {out.shape[0]} (expected 1)")

    if spec.output_kind is OutputKind.MULTI_CLASS:
        if out.shape[1] < 2:
            raise InferenceError(f"multi-class model {spec.id} returned {out.shape[1]} channel(s)")
        logits = out[0]
        exp = np.exp(logits - logits.max(axis=0, keepdims=True))
        probs = exp / exp.sum(axis=0, keepdims=True)
        # Channel 0 is background; everything else is foreground.
        return np.clip(1.0 - probs[0], 0.0, 1.0)

    if out.shape[1] != 1:
        raise InferenceError(f"unexpected output channels: {out.shape[1]} (expected 1)")
    pred = out[0, 0]
    # Some exports emit probabilities, others logits; a sigmoid over
    # probabilities would squash the background to ~0.5.
    if float(pred.min()) >= -0.01 and float(pred.max()) <= 1.01:
        return np.clip(pred, 0.0, 1.0)
    return _sigmoid(pred)


def resample_mask(prob: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """Resize a probability map to ``size`` (width, height) and quantize to 8 bits."""
    resized = cv2.resize(prob.astype(np.float32), size, interpolation=cv2.INTER_LINEAR)
    return np.clip(np.rint(resized * 255.0), 0, 255).astype(np.uint8)


def run_model(model: ModelSession, tensor: np.ndarray, lock: Lock) -> np.ndarray:
    """Invoke the native session; calls on one runtime are serialized and never retried."""
    try:
        with lock:
            outputs = model.session.run(None, {model.input_name: tensor})
    except Exception as exc:  # noqa: BLE001
        raise InferenceError(f"run inference: {exc}") from exc
    if not outputs:
        raise InferenceError("model produced no outputs")
    return outputs[0]


@dataclass
class InferenceOutput:
    mask: np.ndarray  # (H, W) uint8 at the input image's size
    image_size: Tuple[int, int]
    execution: BackendKind


class InferencePipeline:
    """Preprocess -> infer -> resample for one decoded image."""

    def __init__(self, sessions: Optional[SessionPool] = None) -> None:
        self.sessions = sessions or SessionPool()

    def run(
        self,
        image: Image.Image,
        spec: ModelSpec,
        model_path,
        runtime: LoadedRuntime,
        execution: BackendKind,
        progress: Optional[RequestProgress] = None,
    ) -> InferenceOutput:
        prepared = prepare_tensor(image, spec)
        if progress:
            progress.advance(Stage.PREPROCESS, f"{prepared.orig_size} -> {prepared.resized_size}")

        model = self.sessions.get(runtime, model_path, execution)
        raw = run_model(model, prepared.tensor, runtime.infer_lock)
        prob = to_probability(raw, spec)
        mask = resample_mask(prob, prepared.orig_size)
        if progress:
            progress.advance(Stage.INFER, f"{spec.id} on {model.execution.value}")
        return InferenceOutput(mask=mask, image_size=prepared.orig_size, execution=model.execution)


# ---------- orchestration ----------


class RemovalService:
    """Provision, infer and composite for removal requests."""

    def __init__(
        self,
        cache: Optional[AssetCache] = None,
        selector: Optional[BackendSelector] = None,
        bus: Optional[EventBus] = None,
        pipeline: Optional[InferencePipeline] = None,
        settings: Optional[config.Settings] = None,
    ) -> None:
        self.settings = settings or config.get_settings()
        self.cache = cache or get_asset_cache()
        self.selector = selector or get_backend_selector()
        self.bus = bus or EventBus()
        self.pipeline = pipeline or InferencePipeline()
        self.tracker = RequestTracker()

    def new_request(
        self,
        image_bytes: bytes,
        options: Optional[RemovalOptions] = None,
        request_id: Optional[int] = None,
    ) -> RemovalRequest:
        if request_id is None:
            request_id = self.tracker.issue()
        else:
            self.tracker.observe(request_id)
        return RemovalRequest(request_id=request_id, image_bytes=image_bytes, options=options or RemovalOptions())

    def remove(
        self,
        request: RemovalRequest,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> RemovalResult:
        progress = RequestProgress(self.bus, request.request_id)
        subscription = self.bus.subscribe(on_progress, request.request_id) if on_progress else None
        try:
            result = self._run(request, progress)
            progress.finish(f"{result.width}x{result.height} via {result.backend}/{result.device}")
            return result
        except RemovalError as exc:
            logger.warning("request %s failed [%s]: %s", request.request_id, exc.code, exc)
            if not progress.finished:
                progress.fail(exc)
            raise
        except Exception as exc:
            logger.exception("request %s failed unexpectedly", request.request_id)
            if not progress.finished:
                progress.fail(exc)
            raise
        finally:
            if subscription is not None:
                subscription.close()

    def _run(self, request: RemovalRequest, progress: RequestProgress) -> RemovalResult:
        opts = request.options

        spec = lookup(opts.model)
        bgcolor = parse_hex_color(opts.bgcolor) if opts.bgcolor else None
        image = decode_image(request.image_bytes)
        plan = self.selector.plan(opts.device, opts.gpu_backend, opts.allow_download)
        progress.advance(Stage.RESOLVE, f"{spec.id} with {plan.describe()}")

        downloaded = []

        def relay(p: DownloadProgress) -> None:
            if p.done:
                downloaded.append(p.url)
            progress.report_download(p.url, p.downloaded, p.total)

        provision = self.selector.needs_provisioning()
        wheel = None
        if provision:
            wheel = self.selector.provisioner.download(plan.kind, opts.allow_download, relay)
        model_path = ensure_model(spec, self.cache, opts.allow_download, relay)
        progress.advance(Stage.DOWNLOAD, f"downloaded {len(downloaded)} file(s)" if downloaded else "cached")
        progress.advance(
            Stage.VERIFY,
            "verified " + ", ".join(downloaded) if downloaded else "cached assets already verified",
        )

        install = None
        if provision:
            install = self.selector.provisioner.extract(plan.kind, wheel, opts.allow_download)
        progress.advance(Stage.EXTRACT, f"{install.package} {install.version}" if install else "runtime ready")

        runtime, plan = self.selector.acquire(plan, install)
        progress.advance(Stage.LOAD_RUNTIME, f"onnxruntime {runtime.kind.value} {runtime.version}")

        output = self.pipeline.run(image, spec, model_path, runtime, plan.execution, progress)

        rgb = np.asarray(image, dtype=np.uint8)
        composed = refine_and_compose(
            rgb,
            output.mask,
            mask_threshold=opts.mask_threshold,
            bgcolor=bgcolor,
            color_key_tolerance=opts.color_key_tolerance,
            settings=self.settings,
        )
        progress.advance(Stage.POSTPROCESS, composed.mode)

        output_png = encode_png(composed.image, composed.mode)
        mask_png = encode_png(standalone_mask(output.mask, opts.mask_threshold), "L") if opts.include_mask else None
        progress.advance(Stage.ENCODE, f"{len(output_png)} bytes")

        width, height = output.image_size
        return RemovalResult(
            request_id=request.request_id,
            output_png=output_png,
            mask_png=mask_png,
            model=spec.id,
            backend=runtime.kind.value,
            device=output.execution.value,
            width=width,
            height=height,
        )


@lru_cache()
def get_service() -> RemovalService:
    """Return the process-wide removal service."""
    return RemovalService()


def remove_background_bytes(
    image_bytes: bytes,
    options: Optional[RemovalOptions] = None,
    on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    request_id: Optional[int] = None,
) -> RemovalResult:
    """
    Full pipeline from raw bytes to PNG bytes.

    Raises:
        RemovalError: a subclass describing which stage failed and whether a
            retry, different options or a process restart is needed.
    """
    service = get_service()
    request = service.new_request(image_bytes, options, request_id)
    return service.remove(request, on_progress=on_progress)
