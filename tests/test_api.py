from __future__ import annotations

import base64
import io

from fastapi.testclient import TestClient
from PIL import Image
import pytest

from conftest import png_bytes
from rembg_service import api
from rembg_service.errors import DownloadTimeout


@pytest.fixture
def client(monkeypatch, service) -> TestClient:
    monkeypatch.setattr(api, "get_service", lambda: service)
    return TestClient(api.app)


def test_health(client) -> None:
    res = client.get("/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["runtime_state"] == "unloaded"
    assert body["runtime"] is None
    assert "u2netp" in body["models"]


def test_models(client) -> None:
    res = client.get("/models")
    assert res.status_code == 200
    by_id = {m["id"]: m for m in res.json()}
    assert by_id["isnet-anime"]["input_width"] == 1024
    assert by_id["u2net_cloth_seg"]["output_kind"] == "multi_class"


def test_remove_bg(client) -> None:
    res = client.post(
        "/remove-bg",
        files={"file": ("a.png", png_bytes(), "image/png")},
        data={"model": "u2netp", "device": "cpu", "include_mask": "true"},
    )

    assert res.status_code == 200
    body = res.json()
    assert body["backend"] == "cpu"
    assert body["device"] == "cpu"
    image = Image.open(io.BytesIO(base64.b64decode(body["output_png"])))
    assert image.mode == "RGBA"
    assert image.size == (20, 20)
    assert body["mask_png"]

    health = client.get("/health").json()
    assert health["runtime_state"] == "loaded"
    assert health["runtime"] == "cpu"


def test_remove_bg_invalid_bgcolor(client) -> None:
    res = client.post(
        "/remove-bg",
        files={"file": ("a.png", png_bytes(), "image/png")},
        data={"model": "u2netp", "bgcolor": "not-a-color"},
    )
    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "invalid_options"


def test_remove_bg_unknown_model(client) -> None:
    res = client.post(
        "/remove-bg",
        files={"file": ("a.png", png_bytes(), "image/png")},
        data={"model": "modnet"},
    )
    assert res.status_code == 404
    assert res.json()["detail"]["code"] == "unknown_model"


def test_remove_bg_rejects_non_image(client) -> None:
    res = client.post(
        "/remove-bg",
        files={"file": ("a.txt", b"hello", "text/plain")},
        data={"model": "u2netp"},
    )
    assert res.status_code == 400
    assert res.json()["detail"]["category"] == "input"


def test_remove_bg_download_disabled(client, fetcher) -> None:
    res = client.post(
        "/remove-bg",
        files={"file": ("a.png", png_bytes(), "image/png")},
        data={"model": "u2net", "allow_download": "false"},
    )
    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "download_disabled"
    assert fetcher.calls == []


def test_remove_bg_transient_failure(client, fetcher) -> None:
    fetcher.error = DownloadTimeout("timed out downloading model")
    res = client.post(
        "/remove-bg",
        files={"file": ("a.png", png_bytes(), "image/png")},
        data={"model": "u2net"},
    )
    assert res.status_code == 503
    assert res.json()["detail"]["category"] == "transient"
