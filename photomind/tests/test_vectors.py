import numpy as np
import pytest

from photomind.errors import InvalidVectorLength
from photomind.vectors import centroid, cosine_similarity, deserialize, normalize, safe_deserialize, serialize


def test_serialize_is_little_endian_float32():
    blob = serialize([1.0, -2.5])
    assert blob == np.array([1.0, -2.5], dtype="<f4").tobytes()
    assert len(blob) == 8


def test_round_trip_preserves_float32_values():
    rng = np.random.default_rng(0)
    vec = rng.standard_normal(512)
    restored = deserialize(serialize(vec))
    assert restored.dtype == np.float32
    np.testing.assert_array_equal(restored, vec.astype(np.float32))


def test_round_trip_is_byte_exact():
    blob = serialize(np.linspace(-1, 1, 128))
    assert serialize(deserialize(blob)) == blob


def test_empty_and_none():
    assert serialize(None) is None
    assert serialize([]) is None
    assert deserialize(None) is None
    assert deserialize(b"") is None


def test_bad_length_raises():
    with pytest.raises(InvalidVectorLength):
        deserialize(b"\x00\x00\x00\x00\x00")


def test_safe_deserialize_maps_bad_length_to_none():
    assert safe_deserialize(b"\x01\x02\x03") is None


def test_self_similarity_is_one():
    rng = np.random.default_rng(1)
    for _ in range(20):
        v = rng.standard_normal(128).astype(np.float32)
        assert cosine_similarity(v, v) == pytest.approx(1.0, abs=1e-6)


def test_unequal_lengths_use_shorter_prefix():
    a = [1.0, 0.0, 5.0, 5.0]
    b = [1.0, 0.0]
    assert cosine_similarity(a, b) == pytest.approx(1.0)
    # the tail of the longer vector is ignored entirely
    assert cosine_similarity([0.0, 1.0, 9.0], [1.0, 0.0]) == pytest.approx(0.0)


def test_degenerate_inputs_score_zero():
    assert cosine_similarity(None, [1.0]) == 0.0
    assert cosine_similarity([], [1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_opposite_vectors():
    assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)


def test_normalize():
    out = normalize([3.0, 4.0])
    np.testing.assert_allclose(out, [0.6, 0.8], rtol=1e-6)
    np.testing.assert_array_equal(normalize([0.0, 0.0]), [0.0, 0.0])


def test_centroid_truncates_to_shortest():
    c = centroid([[1.0, 2.0, 3.0], [3.0, 4.0]])
    np.testing.assert_allclose(c, [2.0, 3.0])
    assert centroid([]) is None
    assert centroid([None]) is None
