import io
import threading
import time
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from photomind.embedding import EmbeddingProvider, LazyModel, decode_image, to_data_url
from photomind.errors import DetectionTimeout, ModelLoadFailure, PhotoFileNotFound


def _image_file(tmp_path, name="face.jpg"):
    path = tmp_path / name
    Image.new("RGB", (64, 48), color=(200, 120, 40)).save(path)
    return str(path)


# ---------------------------------------------------------------------------
# LazyModel
# ---------------------------------------------------------------------------


def test_concurrent_first_calls_load_once():
    calls = []

    def loader():
        calls.append(1)
        time.sleep(0.05)
        return object()

    lazy = LazyModel("slow", loader)
    results = []
    threads = [threading.Thread(target=lambda: results.append(lazy.get())) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(calls) == 1
    assert len({id(r) for r in results}) == 1
    assert lazy.loaded


def test_failure_is_cached_until_reset():
    loader = MagicMock(side_effect=OSError("weights missing"))
    lazy = LazyModel("clip", loader)

    with pytest.raises(ModelLoadFailure) as first:
        lazy.get()
    with pytest.raises(ModelLoadFailure):
        lazy.get()
    assert loader.call_count == 1
    assert first.value.model == "clip"
    assert lazy.error == "weights missing"

    loader.side_effect = None
    loader.return_value = "model"
    lazy.reset()
    assert lazy.get() == "model"
    assert lazy.error is None


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


def test_detect_faces_times_out_and_recovers(tmp_path):
    path = _image_file(tmp_path)
    gate = threading.Event()
    engine = MagicMock()
    engine.detect.side_effect = lambda p: gate.wait(5) and []

    provider = EmbeddingProvider(face_loader=lambda: engine, clip_loader=MagicMock(), detection_timeout=0.1)
    with pytest.raises(DetectionTimeout) as info:
        provider.detect_faces(path)
    assert info.value.path == path

    gate.set()
    assert provider.detect_faces(path) == []
    provider.close()


def test_detect_faces_missing_file_skips_model(tmp_path):
    face_loader = MagicMock()
    provider = EmbeddingProvider(face_loader=face_loader, clip_loader=MagicMock())
    with pytest.raises(PhotoFileNotFound):
        provider.detect_faces(str(tmp_path / "nope.jpg"))
    face_loader.assert_not_called()


def test_embed_image_accepts_data_url(tmp_path):
    clip = MagicMock()
    clip.encode_images.return_value = np.ones((1, 4), dtype=np.float32) * 0.5
    provider = EmbeddingProvider(face_loader=MagicMock(), clip_loader=lambda: clip)

    url = to_data_url(Image.new("RGB", (10, 10), color=(1, 2, 3)))
    vec = provider.embed_image(url)
    np.testing.assert_array_equal(vec, [0.5, 0.5, 0.5, 0.5])
    [images] = clip.encode_images.call_args[0]
    assert images[0].size == (10, 10)


def test_status_reports_each_model(tmp_path):
    provider = EmbeddingProvider(face_loader=MagicMock(side_effect=RuntimeError("no onnx")), clip_loader=MagicMock())
    with pytest.raises(ModelLoadFailure):
        provider.ensure_loaded()
    status = provider.status()
    assert status["face-detector"] == {"loaded": False, "error": "no onnx"}
    assert status["clip"] == {"loaded": False, "error": None}


# ---------------------------------------------------------------------------
# Image decoding
# ---------------------------------------------------------------------------


def test_decode_image_sources(tmp_path):
    path = _image_file(tmp_path)
    assert decode_image(path).size == (64, 48)

    buf = io.BytesIO()
    Image.new("RGBA", (5, 5)).save(buf, format="PNG")
    assert decode_image(buf.getvalue()).mode == "RGB"

    url = to_data_url(Image.new("RGB", (7, 3)))
    assert url.startswith("data:image/jpeg;base64,")
    assert decode_image(url).size == (7, 3)

    with pytest.raises(PhotoFileNotFound):
        decode_image(str(tmp_path / "missing.png"))
