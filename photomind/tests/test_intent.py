import pytest

from photomind.intent import QueryIntent


def test_from_json_extracts_object_from_chatter():
    text = 'Sure! Here is the intent:\n{"type": "location", "confidence": 0.9, "refinedQuery": "lake tahoe",' \
           ' "entities": [{"type": "location", "value": "Tahoe", "confidence": 0.8}],' \
           ' "searchHints": [{"type": "location", "value": "tahoe"}]}\nDone.'
    intent = QueryIntent.from_json(text, original="photos at tahoe")
    assert intent.type == "location"
    assert intent.confidence == 0.9
    assert intent.refined_query == "lake tahoe"
    assert intent.entities[0].value == "Tahoe"
    assert intent.search_hints[0].type == "location"


def test_unknown_type_becomes_mixed():
    intent = QueryIntent.from_dict({"type": "astrology"}, original="stars")
    assert intent.type == "mixed"
    assert intent.refined_query == "stars"
    assert intent.confidence == 0.5


def test_no_json_raises():
    with pytest.raises(ValueError):
        QueryIntent.from_json("I could not parse that")


def test_to_dict_uses_wire_names():
    data = QueryIntent(type="people", refined_query="alice").to_dict()
    assert data["refinedQuery"] == "alice"
    assert data["searchHints"] == []
    assert QueryIntent.from_dict(data).type == "people"
