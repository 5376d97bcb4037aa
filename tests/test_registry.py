from __future__ import annotations

import pytest

from rembg_service.errors import UnknownModel
from rembg_service.registry import OutputKind, lookup, supported_models


def test_lookup_known_model() -> None:
    spec = lookup("u2netp")
    assert spec.input_size == (320, 320)
    assert spec.expected_checksum.startswith("md5:")
    assert spec.source_url.endswith("/u2netp.onnx")
    assert spec.filename == "u2netp.onnx"


def test_lookup_normalizes_id() -> None:
    assert lookup("  ISNET-General-Use ").id == "isnet-general-use"


def test_lookup_unknown_model_lists_supported() -> None:
    with pytest.raises(UnknownModel) as info:
        lookup("modnet")
    assert "u2netp" in str(info.value)
    assert info.value.category == "configuration"


def test_registry_contents() -> None:
    ids = supported_models()
    assert ids == sorted(ids)
    assert {"u2netp", "u2net", "silueta", "isnet-anime"} <= set(ids)
    assert lookup("u2net_cloth_seg").output_kind is OutputKind.MULTI_CLASS
    assert lookup("isnet-anime").input_size == (1024, 1024)
