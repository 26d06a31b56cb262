"""Weighted score fusion of keyword and vector matches.

Each source's score is normalized to [0, 1] (keyword score / 100, vector
similarity clamped) and multiplied by the source weight. A photo found by
both sources gets the sum of its two contributions.
"""

from dataclasses import dataclass, field
from datetime import datetime

from photomind import config

KEYWORD = "keyword"
SEMANTIC = "semantic"

INTENT_WEIGHTS = {
    "keyword": (0.7, 0.3),
    "semantic": (0.2, 0.8),
    "people": (0.5, 0.5),
    "location": (0.5, 0.5),
    "time": (0.5, 0.5),
}


@dataclass
class SearchSource:
    type: str
    score: float
    weight: float
    weighted_score: float


@dataclass
class MergedResult:
    photo_id: int
    photo_uuid: str
    file_name: str
    file_path: str
    score: float = 0.0
    rank: int = 0
    sources: list[SearchSource] = field(default_factory=list)
    highlights: list[str] = field(default_factory=list)
    taken_at: str | None = None

    def source_score(self, kind: str) -> float:
        return sum(s.weighted_score for s in self.sources if s.type == kind)

    def to_dict(self) -> dict:
        return {
            "photo_id": self.photo_id,
            "photo_uuid": self.photo_uuid,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "score": round(self.score, 4),
            "rank": self.rank,
            "sources": [s.__dict__ for s in self.sources],
            "highlights": self.highlights,
            "taken_at": self.taken_at,
        }


def normalize_keyword_score(score: float) -> float:
    return min(score / 100.0, 1.0)


def normalize_vector_score(similarity: float) -> float:
    return min(max(similarity, 0.0), 1.0)


def weights_for_intent(intent) -> tuple[float, float]:
    """(keyword, vector) weights for a QueryIntent or bare type string."""
    kind = getattr(intent, "type", intent)
    return INTENT_WEIGHTS.get(kind, (config.KEYWORD_WEIGHT, config.VECTOR_WEIGHT))


def merge_results(
    keyword_matches,
    vector_matches,
    keyword_weight: float = config.KEYWORD_WEIGHT,
    vector_weight: float = config.VECTOR_WEIGHT,
) -> list[MergedResult]:
    merged: dict[int, MergedResult] = {}

    def _entry(match) -> MergedResult:
        if match.photo_id not in merged:
            merged[match.photo_id] = MergedResult(
                photo_id=match.photo_id,
                photo_uuid=match.photo_uuid,
                file_name=match.file_name,
                file_path=match.file_path,
                taken_at=match.taken_at,
            )
        return merged[match.photo_id]

    for match in keyword_matches:
        entry = _entry(match)
        normalized = normalize_keyword_score(match.score)
        entry.sources.append(SearchSource(KEYWORD, normalized, keyword_weight, normalized * keyword_weight))
        entry.highlights.extend(h for h in match.highlights if h not in entry.highlights)

    for match in vector_matches:
        entry = _entry(match)
        normalized = normalize_vector_score(match.similarity)
        entry.sources.append(SearchSource(SEMANTIC, normalized, vector_weight, normalized * vector_weight))

    for entry in merged.values():
        entry.score = sum(s.weighted_score for s in entry.sources)
    return list(merged.values())


def rank(results: list[MergedResult], min_score: float = config.MIN_COMBINED_SCORE, limit: int = config.DEFAULT_LIMIT) -> list[MergedResult]:
    kept = sorted((r for r in results if r.score >= min_score), key=lambda r: (-r.score, r.photo_id))[:limit]
    for i, r in enumerate(kept, 1):
        r.rank = i
    return kept


def _taken_at_key(result: MergedResult) -> float:
    if not result.taken_at:
        return 0.0
    try:
        return datetime.fromisoformat(result.taken_at.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def reorder(results: list[MergedResult], sort_by: str = "mixed") -> list[MergedResult]:
    """Re-rank by keyword contribution, semantic contribution, recency or combined score."""
    keys = {
        KEYWORD: lambda r: r.source_score(KEYWORD),
        SEMANTIC: lambda r: r.source_score(SEMANTIC),
        "recency": _taken_at_key,
    }
    ordered = sorted(results, key=keys.get(sort_by, lambda r: r.score), reverse=True)
    for i, r in enumerate(ordered, 1):
        r.rank = i
    return ordered


def result_stats(results: list[MergedResult]) -> dict:
    both = keyword_only = semantic_only = 0
    for r in results:
        kinds = {s.type for s in r.sources}
        if kinds == {KEYWORD, SEMANTIC}:
            both += 1
        elif KEYWORD in kinds:
            keyword_only += 1
        elif SEMANTIC in kinds:
            semantic_only += 1
    return {
        "total": len(results),
        "with_both_sources": both,
        "keyword_only": keyword_only,
        "semantic_only": semantic_only,
        "avg_score": sum(r.score for r in results) / len(results) if results else 0.0,
    }
