import pytest

from photomind.keyword import KeywordMatcher, edit_similarity, is_fuzzy_match, levenshtein, parse_keywords, score_field
from photomind.store import VectorStore


@pytest.fixture
def store(tmp_path):
    return VectorStore(tmp_path / "photomind.db")


def _score(store, path, query, **photo_fields):
    store.add_photo(path, **photo_fields)
    result = KeywordMatcher(store).search(query)
    return result.results[0] if result.results else None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_parse_keywords():
    assert parse_keywords("  Lake  Tahoe ") == ["lake", "tahoe"]
    assert parse_keywords("") == []


def test_levenshtein():
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert levenshtein("same", "same") == 0


def test_edit_similarity():
    assert edit_similarity("lake", "lame") == pytest.approx(0.75)
    assert edit_similarity("", "") == 1.0


def test_fuzzy_match_checks_tokens():
    assert is_fuzzy_match("summer_lake.jpg", "lame")
    assert not is_fuzzy_match("summer_lake.jpg", "zebra")


def test_score_field_tiers():
    assert score_field("lake.jpg", "lake", "file_name") == 100
    assert score_field("summer lake.jpg", "lake", "file_name") == 80
    assert score_field("summer-lake.jpg", "lake", "file_name") == 80
    assert score_field("summer_lake.jpg", "lake", "file_name") == 80
    assert score_field("bluelake.jpg", "lake", "file_name") == 50
    assert score_field("lame.jpg", "lake", "file_name") == 12.5
    assert score_field("/trips/lake", "lake", "folder_path") == 30
    assert score_field("/trips/lame", "lake", "folder_path") == 15
    assert score_field('{"make": "canon"}', "canon", "exif_data") == 10


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------


def test_prefix_match(store):
    match = _score(store, "/photos/lake.jpg", "lake")
    assert match.score == 100
    assert match.matched_field == "file_name"
    assert match.highlights == ["lake"]


def test_fuzzy_file_name_match_is_penalized(store):
    match = _score(store, "/photos/lake.jpg", "lame")
    assert match.score == 12.5


def test_fuzzy_can_be_disabled(store):
    store.add_photo("/photos/lake.jpg")
    assert KeywordMatcher(store).search("lame", fuzzy=False).total == 0


def test_folder_match(store):
    match = _score(store, "/trips/lake/img_001.jpg", "lake")
    assert match.score == 30
    assert match.matched_field == "folder_path"


def test_exif_and_location_match(store):
    match = _score(store, "/x/img.jpg", "canon", exif_data={"Make": "Canon"})
    assert match.score == 10
    assert match.matched_field == "exif_data"


def test_unparseable_metadata_is_ignored(store):
    assert _score(store, "/x/img.jpg", "canon", exif_data="{not json canon") is None


def test_best_field_wins_and_results_sort(store):
    store.add_photo("/lake/boat.jpg")
    store.add_photo("/photos/lake_sunset.jpg")
    store.add_photo("/photos/sunset_lake.jpg")
    store.add_photo("/photos/dog.jpg")
    result = KeywordMatcher(store).search("lake")
    assert result.total == 3
    assert [m.file_name for m in result.results] == ["lake_sunset.jpg", "sunset_lake.jpg", "boat.jpg"]
    assert [m.score for m in result.results] == [100, 80, 30]


def test_limit_and_offset(store):
    for i in range(5):
        store.add_photo(f"/p/lake_{i}.jpg")
    matcher = KeywordMatcher(store)
    page = matcher.search("lake", limit=2, offset=2)
    assert page.total == 5
    assert [m.file_name for m in page.results] == ["lake_2.jpg", "lake_3.jpg"]


def test_empty_query(store):
    store.add_photo("/p/lake.jpg")
    assert KeywordMatcher(store).search("   ").total == 0


def test_suggestions_and_counts(store):
    store.add_photo("/p/lake_tahoe.jpg")
    store.add_photo("/p/lakeside.jpg")
    store.add_photo("/p/Lake-Como.jpg")
    matcher = KeywordMatcher(store)
    assert matcher.suggestions("lake") == ["lake", "lakeside"]
    assert matcher.count_by_keyword("LAKE") == 3
