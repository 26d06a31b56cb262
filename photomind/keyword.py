"""Keyword matcher over photo file names, folders and metadata text.

Each (field, keyword) pair is scored and the best pair wins:

    file_name   prefix 100, word boundary 80, substring 50, fuzzy 25
    folder_path 30
    exif_data / location_data 10

A fuzzy hit (edit similarity above FUZZY_SIMILARITY, no substring) is
multiplied by FUZZY_PENALTY.
"""

import json
import logging
import re
from dataclasses import dataclass, field

from photomind import config
from photomind.store import Photo, VectorStore

logger = logging.getLogger(__name__)

FIELDS = ("file_name", "folder_path", "exif_data", "location_data")


@dataclass
class KeywordMatch:
    photo_id: int
    photo_uuid: str
    file_name: str
    file_path: str
    matched_field: str
    score: float
    highlights: list[str] = field(default_factory=list)
    taken_at: str | None = None


@dataclass
class KeywordSearchResult:
    query: str
    results: list[KeywordMatch]
    total: int


def parse_keywords(query: str) -> list[str]:
    return [k for k in query.lower().split() if k]


def _tokenize(text: str) -> list[str]:
    """Lowercase split on non-alphanumeric boundaries."""
    return re.findall(r"[a-z0-9]+", text.lower())


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def edit_similarity(a: str, b: str) -> float:
    """(len(longer) - distance) / len(longer); 1.0 for two empty strings."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein(a, b)) / longer


def field_value(photo: Photo, name: str) -> str | None:
    """Lowercased text for a searchable field, or None when absent."""
    if name == "file_name":
        return photo.file_name.lower() or None
    if name == "folder_path":
        return "/".join(photo.file_path.split("/")[:-1]).lower() or None
    raw = photo.exif_data if name == "exif_data" else photo.location_data
    if not raw:
        return None
    try:
        return json.dumps(json.loads(raw)).lower()
    except (TypeError, ValueError):
        logger.debug("Unparseable %s on photo %s", name, photo.id)
        return None


def is_fuzzy_match(value: str, keyword: str, threshold: float = config.FUZZY_SIMILARITY) -> bool:
    candidates = [value, *_tokenize(value)]
    return any(edit_similarity(c, keyword) > threshold for c in candidates)


def score_field(value: str, keyword: str, name: str) -> float:
    exact = keyword in value
    if name == "file_name":
        if value.startswith(keyword):
            score = 100.0
        elif f" {keyword}" in value or f"-{keyword}" in value or f"_{keyword}" in value:
            score = 80.0
        elif exact:
            score = 50.0
        else:
            score = 25.0
    elif name == "folder_path":
        score = 30.0
    else:
        score = 10.0
    if not exact:
        score *= config.FUZZY_PENALTY
    return score


class KeywordMatcher:
    def __init__(self, store: VectorStore):
        self._store = store

    def match_photo(self, photo: Photo, keywords: list[str], fields=FIELDS, fuzzy: bool = True) -> KeywordMatch | None:
        best_score = 0.0
        best_field = ""
        best_keyword = ""
        for name in fields:
            value = field_value(photo, name)
            if not value:
                continue
            for keyword in keywords:
                if keyword not in value and (not fuzzy or not is_fuzzy_match(value, keyword)):
                    continue
                score = score_field(value, keyword, name)
                if score > best_score:
                    best_score, best_field, best_keyword = score, name, keyword
        if best_score <= 0:
            return None
        return KeywordMatch(
            photo_id=photo.id,
            photo_uuid=photo.uuid,
            file_name=photo.file_name,
            file_path=photo.file_path,
            matched_field=best_field,
            score=best_score,
            highlights=[best_keyword],
            taken_at=photo.taken_at,
        )

    def search(
        self,
        query: str,
        limit: int = config.DEFAULT_LIMIT,
        offset: int = 0,
        fields=FIELDS,
        fuzzy: bool = True,
    ) -> KeywordSearchResult:
        keywords = parse_keywords(query)
        if not keywords:
            return KeywordSearchResult(query=query, results=[], total=0)
        matches = []
        for photo in self._store.all_photos():
            match = self.match_photo(photo, keywords, fields, fuzzy)
            if match is not None:
                matches.append(match)
        matches.sort(key=lambda m: (-m.score, m.photo_id))
        logger.debug("Keyword search %r: %d matches", query, len(matches))
        return KeywordSearchResult(query=query, results=matches[offset:offset + limit], total=len(matches))

    def suggestions(self, query: str, limit: int = 10) -> list[str]:
        """File-name words containing any of the query keywords."""
        keywords = parse_keywords(query)
        found: dict[str, None] = {}
        for photo in self._store.all_photos():
            for word in _tokenize(photo.file_name):
                if any(k in word for k in keywords):
                    found.setdefault(word)
            if len(found) >= limit:
                break
        return list(found)[:limit]

    def count_by_keyword(self, keyword: str) -> int:
        needle = keyword.lower()
        return sum(1 for p in self._store.all_photos() if needle in p.file_name.lower())
