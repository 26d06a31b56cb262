"""Lazily loaded face and semantic models behind one provider.

Both models load on first use. Concurrent first callers wait on the same
load. A failed load is remembered and re-raised as ModelLoadFailure on every
later call until reset() clears it, so a broken model does not retry on
every photo of a scan.
"""

import base64
import io
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable

import numpy as np
from PIL import Image

from photomind import config
from photomind.errors import DetectionTimeout, ModelLoadFailure, PhotoFileNotFound
from photomind.face import FaceDetectionResult, FaceEngine
from photomind.models import ClipModel

logger = logging.getLogger(__name__)


class LazyModel:
    """Load-once holder: at most one load in flight, failures cached until reset()."""

    def __init__(self, name: str, loader: Callable[[], object]):
        self.name = name
        self._loader = loader
        self._lock = threading.Lock()
        self._model = None
        self._error: ModelLoadFailure | None = None

    @property
    def loaded(self) -> bool:
        return self._model is not None

    @property
    def error(self) -> str | None:
        return self._error.reason if self._error else None

    def get(self):
        model = self._model
        if model is not None:
            return model
        with self._lock:
            if self._model is not None:
                return self._model
            if self._error is not None:
                raise self._error
            try:
                self._model = self._loader()
            except Exception as exc:
                logger.warning("Loading %s failed", self.name, exc_info=True)
                self._error = ModelLoadFailure(self.name, str(exc) or type(exc).__name__)
                raise self._error from exc
            return self._model

    def reset(self) -> None:
        with self._lock:
            self._model = None
            self._error = None


def _load_face_engine() -> FaceEngine:
    engine = FaceEngine()
    engine.load()
    return engine


def _load_clip() -> ClipModel:
    model = ClipModel()
    model.load()
    return model


def decode_image(source) -> Image.Image:
    """Accept a PIL image, a filesystem path, raw bytes or a base64 data URL."""
    if isinstance(source, Image.Image):
        return source.convert("RGB")
    if isinstance(source, (bytes, bytearray)):
        return Image.open(io.BytesIO(source)).convert("RGB")
    if isinstance(source, str) and source.startswith("data:"):
        _, _, payload = source.partition(",")
        return Image.open(io.BytesIO(base64.b64decode(payload))).convert("RGB")
    path = Path(source)
    if not path.exists():
        raise PhotoFileNotFound(str(path))
    with Image.open(path) as img:
        return img.convert("RGB")


def to_data_url(image: Image.Image) -> str:
    buf = io.BytesIO()
    image.convert("RGB").save(buf, format="JPEG", quality=90)
    return "data:image/jpeg;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class EmbeddingProvider:
    """Face detection with descriptors plus joint image/text embeddings."""

    def __init__(
        self,
        face_loader: Callable[[], object] = _load_face_engine,
        clip_loader: Callable[[], object] = _load_clip,
        detection_timeout: float = config.DETECTION_TIMEOUT_SECONDS,
    ):
        self.face = LazyModel("face-detector", face_loader)
        self.clip = LazyModel("clip", clip_loader)
        self.detection_timeout = detection_timeout
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="face-detect")

    def ensure_loaded(self) -> None:
        self.face.get()
        self.clip.get()

    def detect_faces(self, image_path: str) -> list[FaceDetectionResult]:
        """Detect faces, boxes in detector space. Raises DetectionTimeout after the deadline."""
        if not Path(image_path).exists():
            raise PhotoFileNotFound(image_path)
        engine = self.face.get()
        future = self._executor.submit(engine.detect, image_path)
        try:
            return future.result(timeout=self.detection_timeout)
        except FutureTimeout:
            # The stuck inference keeps its worker; later calls get a fresh one.
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="face-detect")
            raise DetectionTimeout(image_path, self.detection_timeout) from None

    def embed_image(self, source) -> np.ndarray:
        model = self.clip.get()
        image = decode_image(source)
        return model.encode_images([image])[0]

    def embed_text(self, text: str) -> np.ndarray:
        return self.clip.get().encode_text(text)

    def status(self) -> dict:
        return {
            lazy.name: {"loaded": lazy.loaded, "error": lazy.error}
            for lazy in (self.face, self.clip)
        }

    def reset(self) -> None:
        self.face.reset()
        self.clip.reset()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
