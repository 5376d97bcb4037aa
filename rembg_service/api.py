"""
FastAPI layer exposing background removal.

Endpoints:
 - GET /health
 - GET /models
 - POST /remove-bg
"""

from __future__ import annotations

import base64
import logging
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, ValidationError

from . import __version__, config
from .errors import InvalidOptions, RemovalError, UnknownModel
from .pipeline import RemovalOptions, get_service
from .registry import lookup, supported_models

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Background Removal Service", version=__version__)

_STATUS_BY_CATEGORY = {
    "input": 400,
    "configuration": 400,
    "transient": 503,
    "fatal": 409,
}


class ModelInfo(BaseModel):
    id: str
    input_width: int
    input_height: int
    output_kind: str


class RemoveBgResponse(BaseModel):
    request_id: int
    model: str
    output_png: str  # base64
    mask_png: Optional[str] = None
    backend: str
    device: str
    width: int
    height: int


def _status_for(exc: RemovalError) -> int:
    if isinstance(exc, UnknownModel):
        return 404
    return _STATUS_BY_CATEGORY.get(exc.category, 500)


def _build_options(**fields) -> RemovalOptions:
    try:
        return RemovalOptions(**{k: v for k, v in fields.items() if v is not None})
    except ValidationError as exc:
        problems = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
        raise InvalidOptions(problems) from exc


@app.get("/health")
def health():
    selector = get_service().selector
    loaded = selector.loaded
    return {
        "status": "ok",
        "runtime_state": selector.state.value,
        "runtime": loaded.kind.value if loaded else None,
        "runtime_version": loaded.version if loaded else None,
        "models": supported_models(),
    }


@app.get("/models", response_model=list[ModelInfo])
def models():
    out = []
    for model_id in supported_models():
        spec = lookup(model_id)
        out.append(
            ModelInfo(
                id=spec.id,
                input_width=spec.input_width,
                input_height=spec.input_height,
                output_kind=spec.output_kind.value,
            )
        )
    return out


@app.post("/remove-bg", response_model=RemoveBgResponse)
def remove_bg(
    file: UploadFile = File(...),
    model: Optional[str] = Form(None),
    device: Optional[str] = Form(None),
    gpu_backend: Optional[str] = Form(None),
    mask_threshold: Optional[int] = Form(None),
    bgcolor: Optional[str] = Form(None),
    color_key_tolerance: Optional[int] = Form(None),
    allow_download: Optional[bool] = Form(None),
    include_mask: bool = Form(False),
):
    image_bytes = file.file.read()
    service = get_service()
    try:
        options = _build_options(
            model=model,
            device=device,
            gpu_backend=gpu_backend,
            mask_threshold=mask_threshold,
            bgcolor=bgcolor or None,
            color_key_tolerance=color_key_tolerance,
            allow_download=allow_download,
            include_mask=include_mask,
        )
        request = service.new_request(image_bytes, options)
        result = service.remove(request)
    except RemovalError as exc:
        status = _status_for(exc)
        if status >= 500:
            logger.warning("remove-bg failed (%s): %s", exc.code, exc)
        raise HTTPException(status_code=status, detail=exc.to_dict()) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Background removal failed: %s", exc)
        raise HTTPException(status_code=500, detail="Background removal failed") from exc

    return RemoveBgResponse(
        request_id=result.request_id,
        model=result.model,
        output_png=base64.b64encode(result.output_png).decode("ascii"),
        mask_png=base64.b64encode(result.mask_png).decode("ascii") if result.mask_png else None,
        backend=result.backend,
        device=result.device,
        width=result.width,
        height=result.height,
    )
