import logging
from dataclasses import dataclass

import numpy as np

from photomind import config
from photomind.store import VectorStore
from photomind.vectors import cosine_similarity, safe_deserialize

logger = logging.getLogger(__name__)


@dataclass
class VectorMatch:
    photo_id: int
    photo_uuid: str
    file_name: str
    file_path: str
    similarity: float
    face_id: int | None = None
    taken_at: str | None = None


class VectorMatcher:
    """Text-to-image similarity against every stored semantic vector."""

    def __init__(self, store: VectorStore, provider):
        self._store = store
        self._provider = provider

    def _photo_scores(self, query_vec: np.ndarray) -> dict[int, tuple[float, int]]:
        """Best (similarity, face_id) per photo. Malformed vectors score 0."""
        best: dict[int, tuple[float, int]] = {}
        for face_id, photo_id, blob in self._store.semantic_vectors():
            sim = cosine_similarity(query_vec, safe_deserialize(blob))
            if photo_id not in best or sim > best[photo_id][0]:
                best[photo_id] = (sim, face_id)
        return best

    def _to_matches(self, scores: dict[int, tuple[float, int | None]], top_k: int, min_similarity: float) -> list[VectorMatch]:
        ranked = sorted(
            ((pid, sim, fid) for pid, (sim, fid) in scores.items() if sim >= min_similarity),
            key=lambda item: (-item[1], item[0]),
        )
        matches = []
        for photo_id, sim, face_id in ranked[:top_k]:
            photo = self._store.get_photo_by_id(photo_id)
            if photo is None:
                continue
            matches.append(VectorMatch(
                photo_id=photo.id,
                photo_uuid=photo.uuid,
                file_name=photo.file_name,
                file_path=photo.file_path,
                similarity=sim,
                face_id=face_id,
                taken_at=photo.taken_at,
            ))
        return matches

    def search(
        self,
        query: str,
        top_k: int = config.VECTOR_CANDIDATES,
        min_similarity: float = config.MIN_VECTOR_SIMILARITY,
    ) -> list[VectorMatch]:
        query = query.strip()
        if not query:
            return []
        query_vec = self._provider.embed_text(query)
        matches = self._to_matches(self._photo_scores(query_vec), top_k, min_similarity)
        logger.debug("Vector search %r: %d matches", query, len(matches))
        return matches

    def multi_query_search(
        self,
        queries: list[str],
        weights: list[float] | None = None,
        top_k: int = config.VECTOR_CANDIDATES,
        min_similarity: float = config.MIN_VECTOR_SIMILARITY,
    ) -> list[VectorMatch]:
        """Weighted blend of several queries' per-photo similarities.

        Weights default to equal and are normalized to sum to 1.
        """
        pairs = [(q.strip(), w) for q, w in zip(queries, weights or [1.0] * len(queries)) if q.strip()]
        if not pairs:
            return []
        total_weight = sum(w for _, w in pairs) or 1.0
        combined: dict[int, tuple[float, int | None]] = {}
        for text, weight in pairs:
            scores = self._photo_scores(self._provider.embed_text(text))
            for photo_id, (sim, face_id) in scores.items():
                previous, best_face = combined.get(photo_id, (0.0, face_id))
                combined[photo_id] = (previous + sim * weight / total_weight, best_face)
        return self._to_matches(combined, top_k, min_similarity)

    def quick_search(self, query: str, top_k: int = config.DEFAULT_TOP_K) -> list[VectorMatch]:
        return self.search(query, top_k=top_k, min_similarity=0.0)
