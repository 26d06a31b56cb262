"""Face detection and descriptors using insightface.

FaceEngine runs buffalo_l (RetinaFace + ArcFace) through ONNX Runtime on CPU.
Every image is resized to the square detector space before inference, so the
returned boxes are in DETECTOR_INPUT_SIZE x DETECTOR_INPUT_SIZE coordinates.
Callers scale them back to the photo's true dimensions.
"""

import logging
from dataclasses import dataclass

import cv2
import numpy as np
from PIL import Image

from photomind import config

logger = logging.getLogger(__name__)


@dataclass
class FaceDetectionResult:
    box: tuple[float, float, float, float]  # (x, y, width, height) in detector space
    confidence: float
    descriptor: np.ndarray | None


class FaceEngine:
    """Detect faces and compute identity descriptors."""

    def __init__(self, model_pack: str = config.FACE_MODEL_PACK, input_size: int = config.DETECTOR_INPUT_SIZE):
        self._model_pack = model_pack
        self.input_size = input_size
        self._app = None

    def load(self) -> None:
        import insightface

        app = insightface.app.FaceAnalysis(
            name=self._model_pack,
            allowed_modules=["detection", "recognition"],
            providers=["CPUExecutionProvider"],
        )
        app.prepare(ctx_id=-1, det_size=(self.input_size, self.input_size))
        self._app = app
        logger.info("FaceEngine loaded (%s, CPU, %dpx)", self._model_pack, self.input_size)

    @property
    def loaded(self) -> bool:
        return self._app is not None

    def detect(self, image_path: str) -> list[FaceDetectionResult]:
        img = self._load_bgr(image_path)
        resized = cv2.resize(img, (self.input_size, self.input_size), interpolation=cv2.INTER_AREA)
        results = []
        for face in self._app.get(resized):
            x1, y1, x2, y2 = (float(v) for v in face.bbox)
            x1 = max(0.0, x1)
            y1 = max(0.0, y1)
            x2 = min(float(self.input_size), x2)
            y2 = min(float(self.input_size), y2)
            descriptor = getattr(face, "normed_embedding", None)
            results.append(FaceDetectionResult(
                box=(x1, y1, x2 - x1, y2 - y1),
                confidence=round(float(face.det_score), 4),
                descriptor=None if descriptor is None else descriptor.astype(np.float32),
            ))
        logger.debug("%d faces in %s", len(results), image_path)
        return results

    @staticmethod
    def _load_bgr(path: str) -> np.ndarray:
        """Load an image as a BGR array; Pillow handles what cv2 cannot decode."""
        img = cv2.imread(path)
        if img is not None:
            return img
        with Image.open(path) as pil_img:
            arr = np.array(pil_img.convert("RGB"))
        return arr[:, :, ::-1].copy()
