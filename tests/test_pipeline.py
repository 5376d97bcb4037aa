from __future__ import annotations

import io

import numpy as np
from PIL import Image
import pytest
from pydantic import ValidationError

from conftest import FakeLoader, make_fake_ort, png_bytes
from rembg_service.errors import DecodeError, DownloadDisabled, InferenceError, UnknownModel
from rembg_service.events import PIPELINE_ORDER, Stage
from rembg_service.pipeline import RemovalOptions, resample_mask, to_probability
from rembg_service.registry import lookup


def _run(service, options, image=None, events=None):
    request = service.new_request(image or png_bytes(), options)
    return service.remove(request, on_progress=events.append if events is not None else None)


def _decode(data: bytes) -> np.ndarray:
    return np.asarray(Image.open(io.BytesIO(data)))


def test_remove_produces_rgba_cutout(service, fetcher) -> None:
    result = _run(service, RemovalOptions(model="u2netp", device="cpu"))

    out = _decode(result.output_png)
    assert out.shape == (20, 20, 4)
    assert (out[:, :9, 3] == 255).all()
    assert (out[:, 11:, 3] == 0).all()
    assert (out[:, :9, :3] == [255, 0, 0]).all()
    assert result.mask_png is None
    assert (result.model, result.backend, result.device) == ("u2netp", "cpu", "cpu")
    assert fetcher.calls == [lookup("u2netp").source_url]


def test_events_follow_pipeline_order(service) -> None:
    events = []
    _run(service, RemovalOptions(model="u2netp"), events=events)

    completions = [e.stage for e in events if e.done]
    assert completions == PIPELINE_ORDER + [Stage.DONE]
    assert sum(1 for e in events if e.is_terminal) == 1

    counters = [e for e in events if e.stage is Stage.DOWNLOAD and not e.done]
    assert counters and all(e.url for e in counters)
    first_done = next(i for i, e in enumerate(events) if e.stage is Stage.DOWNLOAD and e.done)
    assert all(events.index(e) < first_done for e in counters)


def test_cached_model_is_reused(service, fetcher) -> None:
    _run(service, RemovalOptions(model="u2netp"))
    events = []
    _run(service, RemovalOptions(model="u2netp", allow_download=False), events=events)

    assert len(fetcher.calls) == 1
    download = next(e for e in events if e.stage is Stage.DOWNLOAD)
    assert download.message == "cached"


def test_download_disabled_emits_single_error(service, fetcher) -> None:
    events = []
    with pytest.raises(DownloadDisabled):
        _run(service, RemovalOptions(model="silueta", allow_download=False), events=events)

    assert fetcher.calls == []
    terminal = [e for e in events if e.is_terminal]
    assert [e.stage for e in terminal] == [Stage.ERROR]
    assert events[-1].stage is Stage.ERROR


def test_unknown_model_fails_before_any_download(service, fetcher) -> None:
    events = []
    with pytest.raises(UnknownModel):
        _run(service, RemovalOptions(model="modnet"), events=events)
    assert [e.stage for e in events] == [Stage.ERROR]
    assert fetcher.calls == []


def test_corrupt_image_is_decode_error(service, fetcher) -> None:
    with pytest.raises(DecodeError):
        _run(service, RemovalOptions(model="u2netp"), image=b"definitely not an image")
    assert fetcher.calls == []


def test_bgcolor_with_mask(service) -> None:
    result = _run(service, RemovalOptions(model="u2netp", bgcolor="#00FF00", include_mask=True, mask_threshold=128))

    out = _decode(result.output_png)
    assert out.shape == (20, 20, 3)
    assert (out[:, 11:] == [0, 255, 0]).all()
    assert (out[:, :9] == [255, 0, 0]).all()

    mask = _decode(result.mask_png)
    assert mask.shape == (20, 20)
    assert set(np.unique(mask)) <= {0, 255}


def test_request_ids_increase(service) -> None:
    first = _run(service, RemovalOptions(model="u2netp"))
    second = _run(service, RemovalOptions(model="u2netp"))
    assert second.request_id > first.request_id
    assert service.tracker.is_stale(first.request_id)


def test_sessions_are_reused(cache, settings, service, loader) -> None:
    _run(service, RemovalOptions(model="u2netp"))
    _run(service, RemovalOptions(model="u2netp", device="cpu"))
    assert len(loader.module.sessions) == 1
    assert loader.module.sessions[0].runs == 2


def test_native_failure_is_inference_error(cache, settings, service) -> None:
    def explode(h, w):
        raise RuntimeError("CUDA out of memory")

    service.selector.loader = FakeLoader(make_fake_ort(output=explode))
    events = []
    with pytest.raises(InferenceError):
        _run(service, RemovalOptions(model="u2netp"), events=events)
    assert events[-1].stage is Stage.ERROR
    assert Stage.PREPROCESS in [e.stage for e in events]


def test_options_validation() -> None:
    with pytest.raises(ValidationError):
        RemovalOptions(model="u2netp", bgcolor="zz00zz")
    with pytest.raises(ValidationError):
        RemovalOptions(model="u2netp", mask_threshold=256)
    with pytest.raises(ValidationError):
        RemovalOptions(model="u2netp", color_key_tolerance=-1)
    assert RemovalOptions(model="u2netp", bgcolor="  ").bgcolor is None


def test_logits_get_sigmoid() -> None:
    spec = lookup("u2netp")
    prob = to_probability(np.array([[[[-10.0, 0.0, 10.0]]]], dtype=np.float32), spec)
    assert prob[0, 0] < 0.001
    assert prob[0, 1] == pytest.approx(0.5)
    assert prob[0, 2] > 0.999

    as_is = to_probability(np.array([[[[0.0, 0.25, 1.0]]]], dtype=np.float32), spec)
    assert as_is.tolist() == [[0.0, 0.25, 1.0]]


def test_multi_class_output_uses_background_channel() -> None:
    spec = lookup("u2net_cloth_seg")
    logits = np.zeros((1, 4, 1, 2), dtype=np.float32)
    logits[0, 0, 0, 0] = 20.0  # background wins
    logits[0, 2, 0, 1] = 20.0  # a clothing class wins
    prob = to_probability(logits, spec)
    assert prob[0, 0] < 0.01
    assert prob[0, 1] > 0.99


def test_bad_output_shape_is_inference_error() -> None:
    with pytest.raises(InferenceError):
        to_probability(np.zeros((1, 3, 4, 4), dtype=np.float32), lookup("u2netp"))
    with pytest.raises(InferenceError):
        to_probability(np.zeros((4, 4), dtype=np.float32), lookup("u2netp"))


def test_resample_mask_matches_image_size() -> None:
    prob = np.full((320, 320), 0.5, dtype=np.float32)
    mask = resample_mask(prob, (37, 11))
    assert mask.shape == (11, 37)
    assert mask.dtype == np.uint8
    assert (mask == 128).all()
