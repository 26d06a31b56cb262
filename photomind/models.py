import logging

import numpy as np
import torch
from PIL import Image

from photomind import config

logger = logging.getLogger(__name__)


def get_device() -> torch.device:
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


class ClipModel:
    """Joint image/text encoder via open_clip. Outputs unit-length float32 vectors."""

    name = "clip"

    def __init__(
        self,
        model_name: str = config.CLIP_MODEL_NAME,
        pretrained: str = config.CLIP_PRETRAINED,
        embedding_dim: int = config.SEMANTIC_DIM,
    ):
        self.embedding_dim = embedding_dim
        self._model_name = model_name
        self._pretrained = pretrained
        self._model = None
        self._preprocess = None
        self._tokenizer = None
        self._device = None

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def load(self, device: torch.device | None = None) -> None:
        import open_clip

        self._device = device or get_device()
        logger.info("Loading CLIP %s/%s on %s", self._model_name, self._pretrained, self._device)
        model, _, self._preprocess = open_clip.create_model_and_transforms(
            self._model_name, pretrained=self._pretrained or None
        )
        self._tokenizer = open_clip.get_tokenizer(self._model_name)
        model = model.to(self._device)
        model.eval()
        self._model = model
        logger.info("Loaded CLIP %s", self._model_name)

    def encode_images(self, images: list[Image.Image]) -> np.ndarray:
        """Returns (N, D) float32, rows normalized."""
        tensors = torch.stack([self._preprocess(img.convert("RGB")) for img in images]).to(self._device)
        with torch.no_grad():
            features = self._model.encode_image(tensors)
            features /= features.norm(dim=-1, keepdim=True)
        return features.cpu().numpy().astype(np.float32)

    def encode_text(self, text: str) -> np.ndarray:
        tokens = self._tokenizer([text]).to(self._device)
        with torch.no_grad():
            features = self._model.encode_text(tokens)
            features /= features.norm(dim=-1, keepdim=True)
        return features[0].cpu().numpy().astype(np.float32)
