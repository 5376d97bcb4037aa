"""
Static registry of supported segmentation models and ONNX Runtime builds.

The registry is the single source of truth mapping a model id to its release
URL, checksum, input size and normalization. Entries are immutable.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple

from .errors import UnknownModel

RELEASE_BASE_URL = "https://github.com/danielgatis/rembg/releases/download/v0.0.0"


class OutputKind(str, Enum):
    SINGLE_CHANNEL = "single_channel"
    MULTI_CLASS = "multi_class"


class BackendKind(str, Enum):
    CPU = "cpu"
    DIRECTML = "directml"
    CUDA = "cuda"

    @property
    def is_gpu(self) -> bool:
        return self is not BackendKind.CPU


# PyPI distribution shipping each native runtime build.
RUNTIME_PACKAGES: Dict[BackendKind, str] = {
    BackendKind.CPU: "onnxruntime",
    BackendKind.DIRECTML: "onnxruntime-directml",
    BackendKind.CUDA: "onnxruntime-gpu",
}


@dataclass(frozen=True)
class ModelSpec:
    id: str
    source_url: str
    expected_checksum: str
    input_width: int
    input_height: int
    mean: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    scale: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    output_kind: OutputKind = OutputKind.SINGLE_CHANNEL

    @property
    def filename(self) -> str:
        return f"{self.id}.onnx"

    @property
    def input_size(self) -> Tuple[int, int]:
        return self.input_width, self.input_height


def _release(model_id: str, md5: str, size: int, output_kind: OutputKind = OutputKind.SINGLE_CHANNEL) -> ModelSpec:
    return ModelSpec(
        id=model_id,
        source_url=f"{RELEASE_BASE_URL}/{model_id}.onnx",
        expected_checksum=f"md5:{md5}",
        input_width=size,
        input_height=size,
        output_kind=output_kind,
    )


_MODELS: Dict[str, ModelSpec] = {
    spec.id: spec
    for spec in (
        _release("u2netp", "8e83ca70e441ab06c318d82300c84806", 320),
        _release("u2net", "60024c5c889badc19c04ad937298a77b", 320),
        _release("u2net_human_seg", "c09ddc2e0104f800e3e1bb4652583d1f", 320),
        _release("u2net_cloth_seg", "2434d1f3cb744e0e49386c906e5a08bb", 320, OutputKind.MULTI_CLASS),
        _release("silueta", "55e59e0d8062d2f5d013f4725ee84782", 320),
        # ISNet exports are trained at 1024px; slower, but finer interior detail.
        _release("isnet-general-use", "fc16ebd8b0c10d971d3513d564d01e29", 1024),
        _release("isnet-anime", "6f184e756bb3bd901c8849220a83e38e", 1024),
    )
}


def supported_models() -> List[str]:
    return sorted(_MODELS)


def lookup(model_id: str) -> ModelSpec:
    """Return the registry entry for ``model_id`` or raise ``UnknownModel``."""
    key = (model_id or "").strip().lower()
    try:
        return _MODELS[key]
    except KeyError:
        raise UnknownModel(
            f"unsupported model: {model_id!r} (supported: {', '.join(supported_models())})",
            model=model_id,
        ) from None
