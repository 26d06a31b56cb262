"""Hybrid keyword + vector search.

Both matchers run side by side; a matcher that raises (for example a
ModelLoadFailure from the text encoder) contributes nothing and its error is
reported on the response instead of failing the search.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from photomind import config
from photomind.fusion import MergedResult, merge_results, rank, reorder, result_stats, weights_for_intent
from photomind.intent import QueryIntent
from photomind.keyword import KeywordMatcher
from photomind.semantic import VectorMatch, VectorMatcher

logger = logging.getLogger(__name__)


@dataclass
class SearchResponse:
    query: str
    results: list[MergedResult]
    keyword_weight: float
    vector_weight: float
    intent: QueryIntent | None = None
    processing_ms: float = 0.0
    keyword_count: int = 0
    semantic_count: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "results": [r.to_dict() for r in self.results],
            "total": self.total,
            "weights": {"keyword": self.keyword_weight, "vector": self.vector_weight},
            "intent": self.intent.to_dict() if self.intent else None,
            "processing_ms": round(self.processing_ms, 1),
            "stats": {
                "keyword_count": self.keyword_count,
                "semantic_count": self.semantic_count,
                "merged_count": self.total,
                **result_stats(self.results),
            },
            "errors": self.errors,
        }


def resolve_weights(weights=None, intent: QueryIntent | None = None) -> tuple[float, float]:
    """Explicit weights win, then intent, then the defaults."""
    if weights is not None:
        if isinstance(weights, dict):
            return float(weights.get("keyword", config.KEYWORD_WEIGHT)), float(weights.get("vector", config.VECTOR_WEIGHT))
        keyword_weight, vector_weight = weights
        return float(keyword_weight), float(vector_weight)
    if intent is not None:
        return weights_for_intent(intent)
    return config.KEYWORD_WEIGHT, config.VECTOR_WEIGHT


class RetrievalEngine:
    def __init__(self, keyword: KeywordMatcher, vector: VectorMatcher):
        self.keyword = keyword
        self.vector = vector

    def search(
        self,
        query: str,
        weights=None,
        intent: QueryIntent | None = None,
        limit: int = config.DEFAULT_LIMIT,
        min_score: float = config.MIN_COMBINED_SCORE,
        sort_by: str = "mixed",
    ) -> SearchResponse:
        started = time.perf_counter()
        keyword_weight, vector_weight = resolve_weights(weights, intent)
        errors: dict[str, str] = {}

        def _keyword():
            return self.keyword.search(query, limit=config.KEYWORD_CANDIDATES).results

        def _vector():
            return self.vector.search(query, top_k=config.VECTOR_CANDIDATES)

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="search") as pool:
            futures = {"keyword": pool.submit(_keyword), "semantic": pool.submit(_vector)}
            found = {}
            for name, future in futures.items():
                try:
                    found[name] = future.result()
                except Exception as exc:
                    logger.warning("%s matcher failed for %r: %s", name, query, exc)
                    errors[name] = str(exc) or type(exc).__name__
                    found[name] = []

        merged = merge_results(found["keyword"], found["semantic"], keyword_weight, vector_weight)
        results = rank(merged, min_score=min_score, limit=limit)
        if sort_by != "mixed":
            results = reorder(results, sort_by)

        response = SearchResponse(
            query=query,
            results=results,
            keyword_weight=keyword_weight,
            vector_weight=vector_weight,
            intent=intent,
            processing_ms=(time.perf_counter() - started) * 1000,
            keyword_count=len(found["keyword"]),
            semantic_count=len(found["semantic"]),
            errors=errors,
        )
        logger.info(
            "Search %r: %d keyword, %d semantic -> %d results (%.0fms)",
            query, response.keyword_count, response.semantic_count, response.total, response.processing_ms,
        )
        return response

    def quick_search(self, query: str, top_k: int = config.DEFAULT_TOP_K) -> list[VectorMatch]:
        return self.vector.quick_search(query, top_k=top_k)
