"""Vector blob codec and similarity helpers.

Vectors are persisted as little-endian float32 arrays: N floats <-> 4N bytes.
Similarity is tolerant of legacy data: vectors of different lengths are
compared over their common prefix, and missing or malformed vectors score 0.
"""

import logging
from typing import Iterable

import numpy as np

from photomind.errors import InvalidVectorLength

logger = logging.getLogger(__name__)

_DTYPE = np.dtype("<f4")


def serialize(vec) -> bytes | None:
    if vec is None:
        return None
    arr = np.asarray(vec, dtype=_DTYPE).ravel()
    if arr.size == 0:
        return None
    return arr.tobytes()


def deserialize(blob: bytes | None) -> np.ndarray | None:
    if blob is None:
        return None
    raw = bytes(blob)
    if len(raw) % _DTYPE.itemsize != 0:
        raise InvalidVectorLength(len(raw))
    if not raw:
        return None
    return np.frombuffer(raw, dtype=_DTYPE).astype(np.float32)


def safe_deserialize(blob: bytes | None) -> np.ndarray | None:
    """deserialize() that maps malformed blobs to None."""
    try:
        return deserialize(blob)
    except InvalidVectorLength:
        logger.warning("Ignoring malformed vector blob (%d bytes)", len(bytes(blob)))
        return None


def cosine_similarity(a, b) -> float:
    """Cosine similarity over min(len(a), len(b)) dimensions.

    Returns 0.0 for missing, empty or zero-norm vectors instead of raising.
    """
    if a is None or b is None:
        return 0.0
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    n = min(a.size, b.size)
    if n == 0:
        return 0.0
    a = a[:n]
    b = b[:n]
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0 or not np.isfinite(norm):
        return 0.0
    return float(np.dot(a, b) / norm)


def normalize(vec) -> np.ndarray:
    arr = np.asarray(vec, dtype=np.float32).ravel()
    norm = np.linalg.norm(arr)
    if norm > 0:
        arr = arr / norm
    return arr.astype(np.float32)


def centroid(vectors: Iterable) -> np.ndarray | None:
    """Mean vector, truncated to the shortest member."""
    arrays = [np.asarray(v, dtype=np.float32).ravel() for v in vectors if v is not None]
    arrays = [a for a in arrays if a.size > 0]
    if not arrays:
        return None
    n = min(a.size for a in arrays)
    return np.mean(np.vstack([a[:n] for a in arrays]), axis=0).astype(np.float32)
