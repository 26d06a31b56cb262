"""Query intent as produced by the external query parser.

Only the JSON contract lives here:

    {"type": "keyword|semantic|time|location|people|mixed",
     "confidence": 0.0-1.0,
     "entities": [{"type": ..., "value": ..., "confidence": ...}],
     "refinedQuery": "...",
     "searchHints": [{"type": ..., "value": ...}]}
"""

import json
import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

QUERY_TYPES = ("keyword", "semantic", "time", "location", "people", "mixed")

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class QueryEntity:
    type: str
    value: str
    confidence: float = 0.5


@dataclass
class SearchHint:
    type: str
    value: str


@dataclass
class QueryIntent:
    type: str = "mixed"
    confidence: float = 0.5
    entities: list[QueryEntity] = field(default_factory=list)
    refined_query: str = ""
    search_hints: list[SearchHint] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict, original: str = "") -> "QueryIntent":
        kind = data.get("type") or "mixed"
        if kind not in QUERY_TYPES:
            logger.debug("Unknown query type %r, treating as mixed", kind)
            kind = "mixed"
        return cls(
            type=kind,
            confidence=float(data.get("confidence") or 0.5),
            entities=[
                QueryEntity(e.get("type", ""), str(e.get("value", "")), float(e.get("confidence") or 0.5))
                for e in data.get("entities") or []
                if isinstance(e, dict)
            ],
            refined_query=data.get("refinedQuery") or original,
            search_hints=[
                SearchHint(h.get("type", ""), str(h.get("value", "")))
                for h in data.get("searchHints") or []
                if isinstance(h, dict)
            ],
        )

    @classmethod
    def from_json(cls, text: str, original: str = "") -> "QueryIntent":
        """Parse the first JSON object in a parser response. Raises ValueError when none parses."""
        match = _JSON_OBJECT.search(text)
        if match is None:
            raise ValueError("no JSON object in query intent response")
        return cls.from_dict(json.loads(match.group(0)), original)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "confidence": self.confidence,
            "entities": [e.__dict__ for e in self.entities],
            "refinedQuery": self.refined_query,
            "searchHints": [h.__dict__ for h in self.search_hints],
        }
